"""Ignore pattern matching for sync scans.

Patterns follow gitignore semantics (via ``pathspec``):

- ``*.tmp`` matches at any depth
- ``build/`` matches directories only
- ``/cache`` is anchored to the scan root
- ``!keep.tmp`` re-includes a previously ignored path
"""

import logging
from collections.abc import Iterable
from typing import Optional

from pathspec import PathSpec

from ..exceptions import SyncConfigError

logger = logging.getLogger(__name__)


class IgnoreMatcher:
    """Decides whether a relative path is excluded from a scan."""

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        """Initialize the matcher.

        Args:
            patterns: Gitignore-style patterns. Blank lines and lines starting
                with ``#`` are skipped.

        Raises:
            SyncConfigError: If a pattern cannot be parsed
        """
        self.patterns: list[str] = [
            line.strip()
            for line in (patterns or [])
            if line.strip() and not line.lstrip().startswith("#")
        ]
        self._spec: Optional[PathSpec] = None
        if self.patterns:
            try:
                self._spec = PathSpec.from_lines("gitignore", self.patterns)
            except ValueError as e:
                raise SyncConfigError(f"Invalid ignore pattern: {e}") from e
            logger.debug(f"Loaded {len(self.patterns)} ignore pattern(s)")

    def __bool__(self) -> bool:
        return self._spec is not None

    def is_ignored(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check if a path should be ignored.

        Args:
            relative_path: Path relative to the scan root (forward slashes)
            is_dir: Whether the path is a directory

        Returns:
            True if the path matches the ignore patterns
        """
        if self._spec is None:
            return False
        target = relative_path.strip("/")
        if is_dir:
            target = f"{target}/"
        return self._spec.match_file(target)
