"""Utility functions and constants for pydirsync."""

from pathlib import PurePosixPath

# =============================================================================
# Constants for file operations
# =============================================================================

# Files at or above this size are copied in chunks (128 MiB)
DEFAULT_CHUNK_THRESHOLD: int = 128 * 1024 * 1024

# Chunk size for chunked transfers (8 MiB)
DEFAULT_CHUNK_SIZE: int = 8 * 1024 * 1024

# Modification times closer than this are considered equal. Covers the
# 2 second granularity of FAT/exFAT timestamps.
DEFAULT_MTIME_TOLERANCE: float = 2.0

# Concurrent transfers while applying a plan
DEFAULT_MAX_WORKERS: int = 2
MAX_WORKERS_LIMIT: int = 8


# =============================================================================
# Path utilities
# =============================================================================


def path_parts(relative_path: str) -> tuple[str, ...]:
    """Split a POSIX relative path into its components.

    Sorting by this key puts every directory before its descendants.

    Examples:
        >>> path_parts("dir/b.txt")
        ('dir', 'b.txt')
    """
    return PurePosixPath(relative_path).parts


def parent_paths(relative_path: str) -> list[str]:
    """Return all ancestor paths of a relative path, nearest first.

    Examples:
        >>> parent_paths("a/b/c.txt")
        ['a/b', 'a']
        >>> parent_paths("top.txt")
        []
    """
    parents = []
    for parent in PurePosixPath(relative_path).parents:
        text = parent.as_posix()
        if text == ".":
            break
        parents.append(text)
    return parents


def is_beneath(relative_path: str, ancestor: str) -> bool:
    """Check whether ``relative_path`` lies strictly inside ``ancestor``."""
    return relative_path.startswith(ancestor.rstrip("/") + "/")


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"
