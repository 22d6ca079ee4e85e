"""Tests for the sync engine."""

import os
import random
import shutil
import tempfile
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from pydirsync.exceptions import (
    ScanError,
    SyncConfigError,
    SyncStateError,
    TransferError,
)
from pydirsync.sync import (
    ActionStatus,
    CancellationToken,
    SessionState,
    SyncEngine,
    SyncPolicy,
    SyncProgressTracker,
)

OLD_MTIME = 1_600_000_000


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def roots(temp_dir):
    """Create empty source and target roots."""
    source = temp_dir / "source"
    target = temp_dir / "target"
    source.mkdir()
    target.mkdir()
    return source, target


def _write(path: Path, size: int, mtime: float = OLD_MTIME) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    os.utime(path, (mtime, mtime))


def _tree(root: Path) -> dict[str, bytes]:
    """Map every relative path to file content (None for directories)."""
    return {
        p.relative_to(root).as_posix(): (None if p.is_dir() else p.read_bytes())
        for p in root.rglob("*")
    }


class TestPlanning:
    """Tests for scanning and planning."""

    def test_concrete_scenario(self, roots):
        """The documented example produces the documented plan and report."""
        source, target = roots
        _write(source / "a.txt", 10)
        _write(source / "dir" / "b.txt", 20)
        _write(target / "a.txt", 5)
        _write(target / "c.txt", 1)

        engine = SyncEngine(source, target, SyncPolicy(allow_delete_extra=True))
        plan = engine.plan()

        assert [str(a) for a in plan] == [
            "Replace(a.txt)",
            "Create(dir)",
            "Create(dir/b.txt)",
            "Delete(c.txt)",
        ]
        assert engine.state == SessionState.PLANNING

        report = engine.apply()

        assert report.state == SessionState.COMPLETED
        assert report.created == 2
        assert report.replaced == 1
        assert report.deleted == 1
        assert report.kept == 0
        assert report.failed == ()
        assert report.cancelled is False
        assert report.succeeded
        assert report.bytes_transferred == 30
        assert _tree(target) == {
            "a.txt": b"x" * 10,
            "dir": None,
            "dir/b.txt": b"x" * 20,
        }

    def test_second_plan_is_empty(self, roots):
        """After a successful sync, a fresh plan has no changes."""
        source, target = roots
        _write(source / "a.txt", 10)
        _write(source / "d" / "e" / "f.bin", 300)
        _write(target / "old.txt", 3)

        policy = SyncPolicy(allow_delete_extra=True)
        assert SyncEngine(source, target, policy).run().succeeded

        engine = SyncEngine(source, target, policy)
        plan = engine.plan()

        assert plan.is_empty
        assert len(plan) == 0
        assert plan.kept_count == 2
        assert engine.state == SessionState.COMPLETED

    def test_source_is_never_modified(self, roots):
        """Applying a plan leaves the source tree unchanged."""
        source, target = roots
        _write(source / "a.txt", 10)
        _write(source / "sub" / "b.txt", 4)
        _write(target / "a.txt", 2)
        _write(target / "extra" / "z.txt", 2)
        before = _tree(source)

        SyncEngine(source, target, SyncPolicy(allow_delete_extra=True)).run()

        assert _tree(source) == before

    def test_target_only_files_kept_without_allow_delete(self, roots):
        """Target-only files survive when deletions are not allowed."""
        source, target = roots
        _write(source / "a.txt", 10)
        _write(target / "mine.txt", 7)

        report = SyncEngine(source, target).run()

        assert report.deleted == 0
        assert (target / "mine.txt").read_bytes() == b"x" * 7
        assert (target / "a.txt").exists()

    def test_missing_target_is_created(self, temp_dir):
        """A target root that does not exist yet is created on apply."""
        source = temp_dir / "source"
        _write(source / "sub" / "f.txt", 5)
        target = temp_dir / "new" / "target"

        report = SyncEngine(source, target).run()

        assert report.succeeded
        assert (target / "sub" / "f.txt").exists()

    def test_missing_source_fails_session(self, temp_dir):
        """An unreadable source root fails the session."""
        engine = SyncEngine(temp_dir / "missing", temp_dir / "target")

        with pytest.raises(ScanError):
            engine.plan()

        assert engine.state == SessionState.FAILED
        assert "missing" in engine.report().error

    def test_run_reports_session_failure(self, temp_dir):
        """run() returns a failed report instead of raising."""
        report = SyncEngine(temp_dir / "missing", temp_dir / "target").run()

        assert report.state == SessionState.FAILED
        assert not report.succeeded
        assert report.error

    def test_overlapping_roots_rejected(self, roots):
        """A target inside the source is refused."""
        source, _ = roots
        engine = SyncEngine(source, source / "backup")

        with pytest.raises(SyncConfigError, match="must not overlap"):
            engine.plan()

        assert engine.state == SessionState.FAILED

    def test_plan_twice_is_invalid(self, roots):
        """A session plans only once."""
        source, target = roots
        _write(source / "a.txt", 1)
        engine = SyncEngine(source, target)
        engine.plan()

        with pytest.raises(SyncStateError):
            engine.plan()

    def test_apply_before_plan_is_invalid(self, roots):
        """apply() needs a plan."""
        source, target = roots

        with pytest.raises(SyncStateError):
            SyncEngine(source, target).apply()

    def test_ignore_patterns_apply_to_both_trees(self, roots):
        """Ignored paths are neither copied nor deleted."""
        source, target = roots
        _write(source / "keep.txt", 1)
        _write(source / "skip.tmp", 1)
        _write(target / "local.tmp", 1)

        policy = SyncPolicy(allow_delete_extra=True, ignore_patterns=("*.tmp",))
        report = SyncEngine(source, target, policy).run()

        assert report.succeeded
        assert set(_tree(target)) == {"keep.txt", "local.tmp"}


class TestApplying:
    """Tests for executing plans."""

    def test_directory_to_file_type_change(self, roots):
        """A target directory is replaced by a source file of the same name."""
        source, target = roots
        _write(source / "x", 4)
        _write(target / "x" / "y", 2)

        engine = SyncEngine(source, target, SyncPolicy(allow_delete_extra=True))
        plan = engine.plan()
        assert [str(a) for a in plan] == ["Delete(x/y)", "Delete(x)", "Create(x)"]

        report = engine.apply()

        assert report.succeeded
        assert (target / "x").is_file()
        assert (target / "x").read_bytes() == b"x" * 4

    def test_file_to_directory_type_change(self, roots):
        """A target file is replaced by a source directory of the same name."""
        source, target = roots
        _write(source / "x" / "inner.txt", 3)
        _write(target / "x", 9)

        report = SyncEngine(source, target).run()

        assert report.succeeded
        assert (target / "x").is_dir()
        assert (target / "x" / "inner.txt").read_bytes() == b"xxx"

    def test_type_change_with_nested_directories_without_prune(self, roots):
        """Replacing a directory tree by a file does not depend on pruning."""
        source, target = roots
        _write(source / "x", 4)
        _write(target / "x" / "sub" / "y", 2)

        report = SyncEngine(source, target, SyncPolicy(allow_delete_extra=True)).run()

        assert report.succeeded
        assert report.left_in_place == ()
        assert (target / "x").read_bytes() == b"x" * 4

    def test_blocked_type_change_is_reported(self, roots):
        """A type change that would delete target-only data is skipped."""
        source, target = roots
        _write(source / "x", 4)
        _write(target / "x" / "precious", 2)

        report = SyncEngine(source, target).run()

        assert report.blocked == ("x",)
        assert (target / "x" / "precious").exists()

    def test_apply_with_exclusions(self, roots):
        """Deselected paths are not applied."""
        source, target = roots
        _write(source / "a.txt", 1)
        _write(source / "skip" / "b.txt", 1)

        engine = SyncEngine(source, target)
        engine.plan()
        report = engine.apply(exclude=["skip"])

        assert report.created == 1
        assert set(_tree(target)) == {"a.txt"}

    def _prune_trees(self, source, target):
        (source / "keep").mkdir()
        _write(source / "a.txt", 1)
        _write(target / "keep" / "old.txt", 1)
        _write(target / "shell" / "inner" / "gone.txt", 1)

    def test_prune_empty_dirs(self, roots):
        """Emptied target-only directories are removed, source directories kept."""
        source, target = roots
        self._prune_trees(source, target)

        policy = SyncPolicy(allow_delete_extra=True, prune_empty_dirs=True)
        report = SyncEngine(source, target, policy).run()

        assert report.succeeded
        assert not (target / "shell").exists()
        assert (target / "keep").is_dir()
        assert set(report.pruned) == {"shell", "shell/inner"}
        assert report.deleted == 4
        assert report.left_in_place == ()
        assert SyncEngine(source, target, policy).plan().is_empty

    def test_without_prune_directories_with_files_stay(self, roots):
        """Without pruning, directories that held files are left for the next run."""
        source, target = roots
        self._prune_trees(source, target)
        policy = SyncPolicy(allow_delete_extra=True)

        report = SyncEngine(source, target, policy).run()

        assert report.succeeded
        assert report.deleted == 2
        assert report.pruned == ()
        assert set(report.left_in_place) == {"shell", "shell/inner"}
        assert list((target / "shell" / "inner").iterdir()) == []

        second = SyncEngine(source, target, policy).run()

        assert second.deleted == 2
        assert not (target / "shell").exists()
        assert SyncEngine(source, target, policy).plan().is_empty

    def test_directory_left_in_place_is_not_counted(self, roots):
        """A directory delete that leaves the directory behind is not a deletion."""
        source, target = roots
        _write(target / "d" / "x.txt", 1)
        _write(target / "d" / "y.txt", 1)
        policy = SyncPolicy(allow_delete_extra=True, prune_empty_dirs=True)

        engine = SyncEngine(source, target, policy)
        engine.plan()
        report = engine.apply(exclude=["d/x.txt"])

        assert report.succeeded
        assert report.deleted == 1
        assert report.left_in_place == ("d",)
        assert report.pruned == ()
        assert (target / "d" / "x.txt").exists()
        assert report.to_dict()["left_in_place"] == ["d"]

    def test_directory_with_ignored_entries_left_in_place(self, roots):
        """Ignored entries keep their directory, which is reported as such."""
        source, target = roots
        _write(target / "d" / "cache.tmp", 1)
        policy = SyncPolicy(allow_delete_extra=True, ignore_patterns=("*.tmp",))

        report = SyncEngine(source, target, policy).run()

        assert report.deleted == 0
        assert report.left_in_place == ("d",)
        assert (target / "d" / "cache.tmp").exists()

    def test_symlinked_target_directory_not_written_through(self, temp_dir, roots):
        """A target directory that is a link outside the target stays untouched."""
        source, target = roots
        elsewhere = temp_dir / "elsewhere"
        elsewhere.mkdir()
        (target / "d").symlink_to(elsewhere, target_is_directory=True)
        _write(source / "d" / "f.txt", 3)

        report = SyncEngine(source, target).run()

        assert report.state == SessionState.COMPLETED
        assert {f.path for f in report.failed} == {"d", "d/f.txt"}
        assert list(elsewhere.iterdir()) == []
        assert (target / "d").is_symlink()

    def test_failed_action_does_not_stop_session(self, roots):
        """A failing action is recorded and the rest of the plan still runs."""
        source, target = roots
        _write(source / "bad.txt", 5)
        _write(source / "good.txt", 5)

        real_copyfile = shutil.copyfile

        def flaky_copyfile(src, dst, *args, **kwargs):
            if Path(src).name == "bad.txt":
                raise PermissionError("denied")
            return real_copyfile(src, dst, *args, **kwargs)

        with patch(
            "pydirsync.sync.operations.shutil.copyfile", side_effect=flaky_copyfile
        ):
            report = SyncEngine(source, target).run()

        assert report.state == SessionState.COMPLETED
        assert not report.succeeded
        assert [f.path for f in report.failed] == ["bad.txt"]
        assert "denied" in report.failed[0].cause
        assert report.created == 1
        assert (target / "good.txt").exists()

    def test_children_blocked_by_failed_directory(self, roots):
        """Actions beneath a directory that could not be created fail too."""
        source, target = roots
        _write(source / "d" / "f.txt", 1)

        with patch(
            "pydirsync.sync.operations.TransferExecutor.create_directory",
            side_effect=TransferError("d", OSError("read-only")),
        ):
            report = SyncEngine(source, target).run()

        causes = {f.path: f.cause for f in report.failed}
        assert set(causes) == {"d", "d/f.txt"}
        assert causes["d/f.txt"] == "Blocked by failed action on d"

    def test_every_action_reaches_terminal_status(self, roots):
        """After completion no record is pending or in progress."""
        source, target = roots
        for i in range(12):
            _write(source / f"dir{i % 3}" / f"f{i}.txt", i + 1)
        _write(target / "stale" / "old.txt", 1)

        policy = SyncPolicy(allow_delete_extra=True, max_workers=4)
        engine = SyncEngine(source, target, policy)
        engine.run()

        snapshot = engine.snapshot()
        assert snapshot.state == SessionState.COMPLETED
        assert all(r.status == ActionStatus.DONE for r in snapshot.records)
        assert snapshot.cursor == len(snapshot.records)
        assert snapshot.fraction_done == 1.0

    def test_target_removed_while_applying_fails_session(self, roots):
        """Losing the target root stops dispatching and fails the session."""
        source, target = roots
        _write(source / "a.txt", 1)
        _write(source / "b.txt", 1)

        def remove_target(event):
            if event.path == "a.txt" and event.status == ActionStatus.DONE:
                shutil.rmtree(target)

        engine = SyncEngine(
            source,
            target,
            SyncPolicy(max_workers=1),
            progress_callback=remove_target,
        )
        report = engine.run()

        assert report.state == SessionState.FAILED
        assert "inaccessible" in report.error
        assert not target.exists()
        records = {r.action.relative_path: r.status for r in engine.snapshot().records}
        assert records["b.txt"] == ActionStatus.PENDING

    def test_target_removed_before_apply_is_not_recreated(self, roots):
        """A target that existed when scanned is not recreated on apply."""
        source, target = roots
        _write(source / "a.txt", 1)
        engine = SyncEngine(source, target)
        engine.plan()
        target.rmdir()

        report = engine.apply()

        assert report.state == SessionState.FAILED
        assert "disappeared" in report.error
        assert not target.exists()


class TestProgress:
    """Tests for the progress event stream."""

    def test_small_file_single_progress_event(self, roots):
        """A small file reports one progress event with its full size."""
        source, target = roots
        _write(source / "small.txt", 100)
        events = []

        SyncEngine(source, target, progress_callback=events.append).run()

        progress = [e for e in events if e.status == ActionStatus.IN_PROGRESS]
        assert len(progress) == 1
        assert progress[0].bytes_done == 100
        assert progress[0].bytes_total == 100
        assert events[-1].status == ActionStatus.DONE
        assert events[-1].path == "small.txt"

    def test_events_are_sequenced(self, roots):
        """Events carry strictly increasing sequence numbers."""
        source, target = roots
        for i in range(6):
            _write(source / f"f{i}.txt", 10)
        tracker = SyncProgressTracker()

        SyncEngine(source, target, tracker=tracker).run()

        events = tracker.drain()
        sequences = [e.sequence for e in events]
        assert sequences == list(range(1, len(events) + 1))
        assert sum(1 for e in events if e.is_terminal) == 6

    def test_chunked_progress_is_non_decreasing(self, roots):
        """Chunked copies report non-decreasing progress up to the total."""
        source, target = roots
        _write(source / "big.bin", 10_000)
        policy = SyncPolicy(chunk_threshold_bytes=1024, chunk_size_bytes=1024)
        events = []

        SyncEngine(source, target, policy, progress_callback=events.append).run()

        done = [e.bytes_done for e in events if e.status == ActionStatus.IN_PROGRESS]
        assert len(done) == 10
        assert done == sorted(done)
        assert done[-1] == 10_000

    def test_callback_consumers_are_not_buffered(self, roots):
        """Events delivered to a callback are not also kept in the queue."""
        source, target = roots
        for i in range(20):
            _write(source / f"f{i}.txt", 10)
        events = []

        engine = SyncEngine(source, target, progress_callback=events.append)
        engine.run()

        assert len(events) == 40
        assert engine.tracker.drain() == []

    def test_events_buffered_without_callback(self, roots):
        """Without a callback the engine's tracker can be polled."""
        source, target = roots
        _write(source / "a.txt", 10)

        engine = SyncEngine(source, target)
        engine.run()

        assert [e.status for e in engine.tracker.drain()] == [
            ActionStatus.IN_PROGRESS,
            ActionStatus.DONE,
        ]


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_mid_copy_removes_partial_file(self, roots):
        """Cancelling during a chunked copy leaves no file and cancels the session."""
        source, target = roots
        _write(source / "big.bin", 50_000)
        _write(source / "later.txt", 5)
        policy = SyncPolicy(
            chunk_threshold_bytes=1000, chunk_size_bytes=1000, max_workers=1
        )
        token = CancellationToken()
        events = []

        def cancel_on_first_chunk(event):
            events.append(event)
            if event.status == ActionStatus.IN_PROGRESS and event.path == "big.bin":
                token.cancel()

        engine = SyncEngine(
            source, target, policy, token, progress_callback=cancel_on_first_chunk
        )
        report = engine.run()

        assert report.state == SessionState.CANCELLED
        assert report.cancelled
        assert not report.succeeded
        assert not (target / "big.bin").exists()
        assert not any(p.name.endswith(".partial") for p in target.rglob("*"))
        assert report.bytes_transferred == 0

        records = {r.action.relative_path: r.status for r in engine.snapshot().records}
        assert records["big.bin"] == ActionStatus.CANCELLED
        assert records["later.txt"] == ActionStatus.PENDING

        big = [e for e in events if e.path == "big.bin"]
        assert big[-1].status == ActionStatus.CANCELLED
        assert big[-1].bytes_done == big[-2].bytes_done == 1000

    def test_cancel_before_scan(self, roots):
        """A session cancelled before scanning never plans."""
        source, target = roots
        _write(source / "a.txt", 1)
        engine = SyncEngine(source, target)
        engine.cancel()

        report = engine.run()

        assert report.state == SessionState.CANCELLED
        assert report.cancelled
        assert not (target / "a.txt").exists()

    def test_cancel_from_another_thread(self, roots):
        """cancel() may be called from any thread while applying."""
        source, target = roots
        _write(source / "big.bin", 200_000)
        policy = SyncPolicy(chunk_threshold_bytes=100, chunk_size_bytes=100)
        started = threading.Event()
        release = threading.Event()

        def on_event(event):
            if event.status == ActionStatus.IN_PROGRESS:
                started.set()
                release.wait(timeout=5)

        engine = SyncEngine(source, target, policy, progress_callback=on_event)
        engine.plan()
        worker = threading.Thread(target=engine.apply)
        worker.start()
        assert started.wait(timeout=5)
        engine.cancel()
        release.set()
        worker.join(timeout=10)

        assert engine.state == SessionState.CANCELLED
        assert engine.snapshot().cancel_requested
        assert not (target / "big.bin").exists()


def _random_tree(root: Path, rng: random.Random, mtime: float) -> None:
    """Fill root with a random mix of nested files and empty directories.

    Names are drawn from a small pool, so the same path often ends up a file
    in one tree and a directory in the other.
    """
    root.mkdir(parents=True, exist_ok=True)
    names = ["a", "b", "c", "d.txt"]
    for _ in range(rng.randint(4, 14)):
        parts = [rng.choice(names) for _ in range(rng.randint(1, 4))]
        path = root.joinpath(*parts)
        try:
            if rng.random() < 0.2:
                path.mkdir(parents=True, exist_ok=True)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(rng.randbytes(rng.randint(0, 64)))
                os.utime(path, (mtime, mtime))
        except OSError:
            # Part of the path is already a file (or the file a directory)
            continue


class TestMirroring:
    """The target ends up identical to the source for arbitrary trees."""

    @pytest.mark.parametrize("seed", range(8))
    def test_target_matches_source(self, temp_dir, seed):
        """After one sync the trees are identical and a new plan is empty."""
        rng = random.Random(seed)
        source = temp_dir / "source"
        target = temp_dir / "target"
        _random_tree(source, rng, OLD_MTIME)
        _random_tree(target, rng, OLD_MTIME - 3600)
        _write(source / "same.bin", 8)
        _write(target / "same.bin", 8)
        before = _tree(source)

        policy = SyncPolicy(
            allow_delete_extra=True, prune_empty_dirs=True, max_workers=4
        )
        report = SyncEngine(source, target, policy).run()

        assert report.succeeded, report.failed
        assert report.blocked == ()
        assert _tree(target) == _tree(source) == before
        assert SyncEngine(source, target, policy).plan().is_empty
