"""Sync policy: the user-selected options for one sync session."""

from dataclasses import dataclass, field, fields
from typing import Any

from ..exceptions import SyncConfigError
from ..utils import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CHUNK_THRESHOLD,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MTIME_TOLERANCE,
    MAX_WORKERS_LIMIT,
)
from .ignore import IgnoreMatcher

# JSON (camelCase) key -> attribute name
_DICT_KEYS = {
    "allowDeleteExtra": "allow_delete_extra",
    "ignore": "ignore_patterns",
    "pruneEmptyDirs": "prune_empty_dirs",
    "chunkThresholdBytes": "chunk_threshold_bytes",
    "chunkSizeBytes": "chunk_size_bytes",
    "mtimeToleranceSeconds": "mtime_tolerance_seconds",
    "includeKept": "include_kept",
    "followSymlinks": "follow_symlinks",
    "maxWorkers": "max_workers",
}


@dataclass(frozen=True)
class SyncPolicy:
    """Options controlling how a source tree is mirrored onto a target tree.

    The policy is supplied by the surrounding application; the engine never
    reads or writes it from disk.

    Examples:
        >>> policy = SyncPolicy(allow_delete_extra=True, ignore_patterns=("*.tmp",))
        >>> policy.prune_empty_dirs
        False
    """

    allow_delete_extra: bool = False
    """Delete target entries that do not exist in the source"""

    ignore_patterns: tuple[str, ...] = field(default_factory=tuple)
    """Gitignore-style patterns excluded from both trees"""

    prune_empty_dirs: bool = False
    """Remove deleted directories once the deletions beneath them finished.

    Without it, a directory that held files when it was scanned is left in
    place (empty) and removed by the next sync.
    """

    chunk_threshold_bytes: int = DEFAULT_CHUNK_THRESHOLD
    """Files at or above this size are copied in chunks"""

    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE
    """Size of a single chunk for chunked copies"""

    mtime_tolerance_seconds: float = DEFAULT_MTIME_TOLERANCE
    """Modification times closer than this are treated as equal"""

    include_kept: bool = False
    """Emit Keep records in the plan (display only, never transferred)"""

    follow_symlinks: bool = False
    """Follow symbolic links while scanning instead of skipping them"""

    max_workers: int = DEFAULT_MAX_WORKERS
    """Number of concurrent transfers while applying"""

    def __post_init__(self) -> None:
        """Normalize and validate the policy values."""
        patterns = self.ignore_patterns
        if isinstance(patterns, str):
            patterns = (patterns,)
        object.__setattr__(self, "ignore_patterns", tuple(patterns or ()))
        IgnoreMatcher(self.ignore_patterns)

        if self.chunk_threshold_bytes < 1:
            raise SyncConfigError("chunk_threshold_bytes must be positive")
        if self.chunk_size_bytes < 1:
            raise SyncConfigError("chunk_size_bytes must be positive")
        if self.chunk_size_bytes > self.chunk_threshold_bytes:
            raise SyncConfigError(
                "chunk_size_bytes cannot exceed chunk_threshold_bytes "
                f"({self.chunk_size_bytes} > {self.chunk_threshold_bytes})"
            )
        if self.mtime_tolerance_seconds < 0:
            raise SyncConfigError("mtime_tolerance_seconds cannot be negative")
        if not 1 <= self.max_workers <= MAX_WORKERS_LIMIT:
            raise SyncConfigError(
                f"max_workers must be between 1 and {MAX_WORKERS_LIMIT}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncPolicy":
        """Create a policy from a configuration dictionary.

        Accepts the camelCase keys used in JSON config files as well as the
        attribute names. Unknown keys are rejected.

        Args:
            data: Dictionary with policy options

        Returns:
            SyncPolicy instance

        Raises:
            SyncConfigError: If a key is unknown or a value is invalid
        """
        attribute_names = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _DICT_KEYS.get(key, key)
            if name not in attribute_names:
                raise SyncConfigError(f"Unknown policy option: {key}")
            kwargs[name] = value

        if "ignore_patterns" in kwargs:
            ignore = kwargs["ignore_patterns"]
            if isinstance(ignore, str):
                ignore = [ignore]
            if not isinstance(ignore, (list, tuple)):
                raise SyncConfigError("ignore must be a list of patterns")
            kwargs["ignore_patterns"] = tuple(str(p) for p in ignore)

        try:
            return cls(**kwargs)
        except TypeError as e:
            raise SyncConfigError(f"Invalid policy: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert the policy to a JSON-serializable dictionary."""
        result: dict[str, Any] = {}
        for key, name in _DICT_KEYS.items():
            value = getattr(self, name)
            result[key] = list(value) if isinstance(value, tuple) else value
        return result
