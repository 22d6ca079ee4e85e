"""Sync profile configuration loaded from JSON files."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import SyncConfigError
from .sync.policy import SyncPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncProfile:
    """A named source/target pair with its sync policy.

    Profiles are stored as a JSON list, for example::

        [
            {
                "alias": "photos",
                "source": "/home/user/Pictures",
                "target": "/mnt/backup/Pictures",
                "allowDeleteExtra": true,
                "ignore": ["*.tmp", ".cache/"]
            }
        ]
    """

    source: Path
    """Source directory (never modified)"""

    target: Path
    """Target directory"""

    alias: Optional[str] = None
    """Optional name used to select the profile"""

    policy: SyncPolicy = field(default_factory=SyncPolicy)
    """Sync policy for this pair"""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncProfile":
        """Create a profile from a dictionary.

        Args:
            data: Dictionary with ``source``, ``target``, optional ``alias``
                and any SyncPolicy keys

        Returns:
            SyncProfile instance

        Raises:
            SyncConfigError: If required keys are missing or values are invalid
        """
        if not isinstance(data, dict):
            raise SyncConfigError(f"Profile must be an object, got {type(data).__name__}")

        missing = [key for key in ("source", "target") if not data.get(key)]
        if missing:
            raise SyncConfigError(f"Profile is missing required keys: {', '.join(missing)}")

        policy_data = {
            key: value
            for key, value in data.items()
            if key not in ("source", "target", "alias")
        }
        alias = data.get("alias")
        return cls(
            source=Path(data["source"]).expanduser(),
            target=Path(data["target"]).expanduser(),
            alias=str(alias) if alias is not None else None,
            policy=SyncPolicy.from_dict(policy_data),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the profile to a JSON-serializable dictionary."""
        data: dict[str, Any] = {"source": str(self.source), "target": str(self.target)}
        if self.alias is not None:
            data["alias"] = self.alias
        data.update(self.policy.to_dict())
        return data

    @property
    def name(self) -> str:
        """Alias if set, else the source directory name."""
        return self.alias or self.source.name


def load_sync_profiles_from_json(path: Union[str, Path]) -> list[SyncProfile]:
    """Load sync profiles from a JSON file.

    Args:
        path: Path to a JSON file containing a list of profiles

    Returns:
        List of SyncProfile objects in file order

    Raises:
        SyncConfigError: If the file cannot be read or is invalid
    """
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise SyncConfigError(f"Cannot read config file {config_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SyncConfigError(f"Invalid JSON in {config_path}: {e}") from e

    if not isinstance(raw, list):
        raise SyncConfigError(f"{config_path}: expected a list of sync profiles")

    profiles = []
    for position, item in enumerate(raw, start=1):
        try:
            profiles.append(SyncProfile.from_dict(item))
        except SyncConfigError as e:
            raise SyncConfigError(f"{config_path}: profile {position}: {e}") from e

    aliases = [p.alias for p in profiles if p.alias]
    duplicates = sorted({a for a in aliases if aliases.count(a) > 1})
    if duplicates:
        raise SyncConfigError(
            f"{config_path}: duplicate profile aliases: {', '.join(duplicates)}"
        )

    logger.debug(f"Loaded {len(profiles)} sync profile(s) from {config_path}")
    return profiles


def find_profile(profiles: list[SyncProfile], name: str) -> SyncProfile:
    """Select a profile by alias (or source directory name).

    Raises:
        SyncConfigError: If no profile matches
    """
    for profile in profiles:
        if profile.alias == name:
            return profile
    for profile in profiles:
        if profile.alias is None and profile.source.name == name:
            return profile
    available = ", ".join(p.name for p in profiles) or "none"
    raise SyncConfigError(f"No sync profile named {name!r} (available: {available})")
