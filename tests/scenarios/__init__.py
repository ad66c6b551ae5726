"""Scenario tests for platform-deploy.

Multi-phase deployments driven through the real PhaseRunner and SecretBootstrap
over the in-memory collaborators in tests/fakes.py. No cluster needed.
"""
