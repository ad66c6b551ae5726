"""Secret-store key material (unseal shares + root token)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import FatalError
from ..shared.paths import write_restricted


@dataclass
class KeyMaterial:
    """Unseal key shares, reconstruction threshold and privileged token."""

    shares: list[str] = field(default_factory=list)
    threshold: int = 0
    root_token: str = ""

    def __post_init__(self):
        if self.threshold < 1 or self.threshold > len(self.shares):
            raise FatalError(
                f"Invalid key material: threshold {self.threshold} with {len(self.shares)} share(s)"
            )
        if not self.root_token:
            raise FatalError("Invalid key material: root token is empty")

    def unseal_keys(self) -> list[str]:
        """The shares used to unseal: the first `threshold` of them."""
        return self.shares[: self.threshold]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyMaterial:
        """Build from the store's init response or the persisted file.

        Accepts `unseal_keys_hex` or the legacy `keys` field for the shares.
        """
        shares = data.get("unseal_keys_hex") or data.get("keys") or []
        threshold = data.get("unseal_threshold") or data.get("threshold") or 0
        return cls(list(shares), int(threshold), data.get("root_token", ""))

    @classmethod
    def from_init_response(cls, data: dict[str, Any], expected_shares: int,
                           expected_threshold: int) -> KeyMaterial:
        """Validate an initialize response against the requested parameters."""
        material = cls.from_dict(
            {"unseal_threshold": expected_threshold, **data}
        )
        if len(material.shares) != expected_shares:
            raise FatalError(
                f"Secret store returned {len(material.shares)} key share(s), "
                f"expected {expected_shares}",
                "Inspect the store's init output; do not re-initialize without a backup",
            )
        return material

    def to_dict(self) -> dict[str, Any]:
        return {
            "unseal_keys_hex": self.shares,
            "unseal_threshold": self.threshold,
            "root_token": self.root_token,
        }

    def save(self, path: Path) -> None:
        write_restricted(path, json.dumps(self.to_dict(), indent=2) + "\n")

    @classmethod
    def load(cls, path: Path) -> KeyMaterial | None:
        """Load from disk; None if the file does not exist.

        Raises:
            FatalError: file exists but cannot be parsed
        """
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise FatalError(f"Key material file {path} is not valid JSON: {e}") from e
        return cls.from_dict(data)
