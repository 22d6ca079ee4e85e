"""Unit tests for sync policies."""

import pytest

from pydirsync.exceptions import SyncConfigError
from pydirsync.sync.policy import SyncPolicy
from pydirsync.utils import DEFAULT_CHUNK_THRESHOLD, DEFAULT_MTIME_TOLERANCE


class TestSyncPolicy:
    """Tests for SyncPolicy class."""

    def test_defaults(self):
        """The default policy is conservative."""
        policy = SyncPolicy()

        assert policy.allow_delete_extra is False
        assert policy.ignore_patterns == ()
        assert policy.prune_empty_dirs is False
        assert policy.chunk_threshold_bytes == DEFAULT_CHUNK_THRESHOLD
        assert policy.mtime_tolerance_seconds == DEFAULT_MTIME_TOLERANCE
        assert policy.include_kept is False
        assert policy.follow_symlinks is False
        assert policy.max_workers == 2

    def test_ignore_patterns_normalized(self):
        """Patterns are stored as a tuple; a single string is one pattern."""
        assert SyncPolicy(ignore_patterns=["*.tmp"]).ignore_patterns == ("*.tmp",)
        assert SyncPolicy(ignore_patterns="*.log").ignore_patterns == ("*.log",)

    def test_policy_is_immutable(self):
        """Policies cannot be changed after creation."""
        policy = SyncPolicy()

        with pytest.raises(AttributeError):
            policy.allow_delete_extra = True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chunk_threshold_bytes": 0},
            {"chunk_size_bytes": 0},
            {"chunk_threshold_bytes": 1024, "chunk_size_bytes": 2048},
            {"mtime_tolerance_seconds": -1},
            {"max_workers": 0},
            {"max_workers": 9},
            {"ignore_patterns": ("!",)},
        ],
    )
    def test_invalid_values(self, kwargs):
        """Invalid values raise SyncConfigError."""
        with pytest.raises(SyncConfigError):
            SyncPolicy(**kwargs)

    def test_from_dict(self):
        """Policies are created from camelCase config keys."""
        data = {
            "allowDeleteExtra": True,
            "ignore": ["*.log", "build/"],
            "pruneEmptyDirs": True,
            "chunkThresholdBytes": 4096,
            "chunkSizeBytes": 1024,
            "mtimeToleranceSeconds": 0.5,
            "includeKept": True,
            "followSymlinks": True,
            "maxWorkers": 4,
        }

        policy = SyncPolicy.from_dict(data)

        assert policy.allow_delete_extra is True
        assert policy.ignore_patterns == ("*.log", "build/")
        assert policy.prune_empty_dirs is True
        assert policy.chunk_threshold_bytes == 4096
        assert policy.chunk_size_bytes == 1024
        assert policy.mtime_tolerance_seconds == 0.5
        assert policy.include_kept is True
        assert policy.follow_symlinks is True
        assert policy.max_workers == 4

    def test_from_dict_accepts_attribute_names(self):
        """Attribute names work as keys too."""
        policy = SyncPolicy.from_dict({"allow_delete_extra": True})

        assert policy.allow_delete_extra is True

    def test_from_dict_minimal(self):
        """An empty dictionary gives the default policy."""
        assert SyncPolicy.from_dict({}) == SyncPolicy()

    def test_from_dict_unknown_key(self):
        """Unknown keys are rejected."""
        with pytest.raises(SyncConfigError, match="Unknown policy option"):
            SyncPolicy.from_dict({"syncMode": "twoWay"})

    def test_from_dict_invalid_ignore(self):
        """The ignore option must be a list."""
        with pytest.raises(SyncConfigError, match="list of patterns"):
            SyncPolicy.from_dict({"ignore": 5})

    def test_from_dict_invalid_type(self):
        """Values of the wrong type raise SyncConfigError."""
        with pytest.raises(SyncConfigError):
            SyncPolicy.from_dict({"maxWorkers": "many"})

    def test_to_dict(self):
        """Policies convert back to camelCase dictionaries."""
        policy = SyncPolicy(allow_delete_extra=True, ignore_patterns=("*.tmp",))

        data = policy.to_dict()

        assert data["allowDeleteExtra"] is True
        assert data["ignore"] == ["*.tmp"]
        assert SyncPolicy.from_dict(data) == policy

    def test_invalid_ignore_pattern_from_dict(self):
        """Unparseable ignore patterns are reported as configuration errors."""
        with pytest.raises(SyncConfigError, match="Invalid ignore pattern"):
            SyncPolicy.from_dict({"ignore": ["*.tmp", "!"]})
