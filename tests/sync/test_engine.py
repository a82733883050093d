"""Tests for the sync engine against in-memory stores."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fakes import FakeRemoteStore, MemoryLocalStore, sha

from vaultsync.core.config import SyncSettings
from vaultsync.core.markers import analyze
from vaultsync.core.types import (
    ActivityAction,
    PauseReason,
    QueueAction,
    RecordStatus,
    SyncState,
)
from vaultsync.sync.engine import SyncEngine
from vaultsync.sync.errors import (
    NotFoundError,
    PermanentRemoteError,
    StorageQuotaError,
    TransientRemoteError,
    UnauthorizedError,
)
from vaultsync.sync.notifications import Notification, NotificationType

BASE = "line1\nline2\nline3\nline4\nline5\n"


def make_engine(
    remote: FakeRemoteStore,
    local: MemoryLocalStore,
    notifications: list[Notification] | None = None,
    **overrides: object,
) -> SyncEngine:
    options: dict[str, object] = {
        "retry_initial_backoff": 0.0,
        "retry_max_backoff": 0.0,
        "duplicate_cleanup_interval_cycles": 0,
    }
    options.update(overrides)
    settings = SyncSettings(**options)  # type: ignore[arg-type]
    notifier = notifications.append if notifications is not None else None
    return SyncEngine(settings, remote, local, notifier=notifier)


async def synced_pair(
    files: dict[str, bytes], **overrides: object
) -> tuple[SyncEngine, FakeRemoteStore, MemoryLocalStore, list[Notification]]:
    """Engine whose local files have already been uploaded once."""
    remote = FakeRemoteStore()
    local = MemoryLocalStore(files)
    notifications: list[Notification] = []
    engine = make_engine(remote, local, notifications, **overrides)
    summary = await engine.run_sync()
    assert summary is not None
    assert summary.created == len(files)
    notifications.clear()
    return engine, remote, local, notifications


class TestCycleScenarios:
    """End-to-end cycle behaviour."""

    @pytest.mark.asyncio
    async def test_unchanged_file_produces_empty_cycle(self) -> None:
        """A synced file that nobody touched yields all-zero counters."""
        engine, _, _, _ = await synced_pair({"notes/a.md": b"hello\n"})

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.pulled == 0
        assert summary.created == 0
        assert summary.updated == 0
        assert summary.deleted == 0
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_remote_only_file_is_downloaded(self) -> None:
        """A new remote file lands locally with a synced record."""
        remote = FakeRemoteStore()
        remote.put("b.md", b"from remote\n")
        local = MemoryLocalStore()
        engine = make_engine(remote, local)

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.pulled == 1
        assert local.files["b.md"] == b"from remote\n"
        record = engine.get_record("b.md")
        assert record is not None
        assert record.status is RecordStatus.SYNCED
        assert record.local_hash == record.remote_hash == sha(b"from remote\n")

    @pytest.mark.asyncio
    async def test_disjoint_edits_merge_cleanly(self) -> None:
        """Edits in different regions are combined without markers."""
        engine, remote, local, _ = await synced_pair({"c.md": BASE.encode()})
        local.put("c.md", BASE.replace("line1", "LOCAL1").encode())
        remote.put("c.md", BASE.replace("line5", "REMOTE5").encode())

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.conflicts == 1
        merged = local.files["c.md"].decode()
        assert "LOCAL1" in merged
        assert "REMOTE5" in merged
        assert not analyze(merged).has_conflict_markers
        assert remote.content_at("c.md") == local.files["c.md"]
        record = engine.get_record("c.md")
        assert record is not None
        assert record.status is RecordStatus.SYNCED
        assert engine.state is SyncState.IDLE
        actions = [e.action for e in engine.get_all_activity_entries()]
        assert ActivityAction.MERGED in actions

    @pytest.mark.asyncio
    async def test_overlapping_edits_leave_one_marker_block(self) -> None:
        """Overlapping edits produce one conflict block and a conflict record."""
        engine, remote, local, notifications = await synced_pair({"c.md": BASE.encode()})
        local.put("c.md", BASE.replace("line3", "LOCAL3").encode())
        remote_version = BASE.replace("line3", "REMOTE3").encode()
        remote.put("c.md", remote_version)

        summary = await engine.run_sync()

        assert summary is not None
        text = local.files["c.md"].decode()
        analysis = analyze(text)
        assert analysis.conflict_count == 1
        assert not analysis.has_unbalanced_markers
        assert text.count("<<<<<<<") == 1
        record = engine.get_record("c.md")
        assert record is not None
        assert record.status is RecordStatus.CONFLICT
        assert record.local_hash == sha(local.files["c.md"])
        # Marker content never leaves the device.
        assert remote.content_at("c.md") == remote_version
        assert engine.state is SyncState.CONFLICT
        assert engine.list_conflicted_files() == ["c.md"]
        assert [n.type for n in notifications] == [NotificationType.CONFLICT]

    @pytest.mark.asyncio
    async def test_conflict_with_markers_is_not_uploaded(self) -> None:
        """Later cycles skip a flagged file while its markers remain."""
        engine, remote, local, _ = await synced_pair({"c.md": BASE.encode()})
        local.put("c.md", BASE.replace("line3", "LOCAL3").encode())
        remote.put("c.md", BASE.replace("line3", "REMOTE3").encode())
        await engine.run_sync()
        updates_before = remote.calls.count("update_file")

        local.put("c.md", local.files["c.md"] + b"more text\n")
        await engine.run_sync()

        assert remote.calls.count("update_file") == updates_before

    @pytest.mark.asyncio
    async def test_resolving_markers_uploads_the_file(self) -> None:
        """Once markers are resolved the file is pushed and synced again."""
        engine, remote, local, _ = await synced_pair({"c.md": BASE.encode()})
        local.put("c.md", BASE.replace("line3", "LOCAL3").encode())
        remote.put("c.md", BASE.replace("line3", "REMOTE3").encode())
        await engine.run_sync()

        resolved = await engine.resolve_conflict_markers("c.md", "local-first")
        summary = await engine.run_sync()

        assert resolved == 1
        assert summary is not None
        assert local.files["c.md"] == BASE.replace("line3", "LOCAL3").encode()
        assert remote.content_at("c.md") == local.files["c.md"]
        record = engine.get_record("c.md")
        assert record is not None
        assert record.status is RecordStatus.SYNCED
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_malformed_markers_leave_file_untouched(self) -> None:
        """Resolution of malformed markers aborts for that file only."""
        engine, _, local, _ = await synced_pair({"c.md": b"a\n"})
        broken = b"<<<<<<< LOCAL\nx\n>>>>>>> REMOTE\n"
        local.put("c.md", broken)

        resolved = await engine.resolve_conflict_markers("c.md", "local-first")

        assert resolved is None
        assert local.files["c.md"] == broken
        latest = engine.get_all_activity_entries()[0]
        assert latest.action is ActivityAction.SKIPPED
        assert latest.path == "c.md"

    @pytest.mark.asyncio
    async def test_quota_error_pauses_uploads_until_acknowledged(self) -> None:
        """Storage-full stops uploads until the pause is acknowledged."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        notifications: list[Notification] = []
        engine = make_engine(remote, local, notifications)
        remote.fail("create_file", StorageQuotaError())

        await engine.run_sync()

        assert engine.state is SyncState.PAUSED
        assert engine.pause_reason is PauseReason.STORAGE_FULL
        assert notifications[-1].type is NotificationType.WARNING
        assert [e.path for e in engine.get_pending_changes()] == ["a.md"]

        local.put("b.md", b"b")
        await engine.run_sync()
        assert remote.calls.count("create_file") == 1
        assert remote.live_paths() == []

        summary = await engine.acknowledge_storage_quota_pause()

        assert summary is not None
        assert summary.created == 2
        assert remote.live_paths() == ["a.md", "b.md"]
        assert engine.pause_reason is None
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_pulls_continue_while_storage_is_full(self) -> None:
        """Downloads still apply during a storage-full pause."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local)
        remote.fail("create_file", StorageQuotaError())
        await engine.run_sync()

        remote.put("remote.md", b"r")
        await engine.run_sync()

        assert local.files["remote.md"] == b"r"
        assert engine.pause_reason is PauseReason.STORAGE_FULL


class TestInFlightEdits:
    """Local edits arriving while a cycle runs."""

    @pytest.mark.asyncio
    async def test_edit_during_pull_is_pushed_after_pull(self) -> None:
        """An edit queued mid-pull waits for the pull and ends up synced."""
        engine, remote, local, _ = await synced_pair({"a.md": b"v1"})
        remote.put("b.md", b"remote")

        started = asyncio.Event()
        release = asyncio.Event()
        original_download = remote.download_file

        async def gated_download(file_id: str) -> bytes:
            started.set()
            await release.wait()
            return await original_download(file_id)

        remote.download_file = gated_download  # type: ignore[method-assign]

        task = asyncio.create_task(engine.run_sync())
        await started.wait()

        local.put("a.md", b"v2")
        engine.queue_path_for_push("a.md")
        assert engine.state is SyncState.PENDING
        assert "update_file" not in remote.calls

        release.set()
        summary = await task

        assert summary is not None
        first_download = remote.calls.index("download_file")
        assert remote.calls.index("update_file") > first_download
        record = engine.get_record("a.md")
        assert record is not None
        assert record.local_hash == sha(b"v2")
        assert record.remote_hash == sha(b"v2")
        assert remote.content_at("a.md") == b"v2"
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_trigger_during_cycle_returns_none(self) -> None:
        """A second trigger while a cycle runs does not start another cycle."""
        engine, remote, _, _ = await synced_pair({"a.md": b"v1"})
        remote.put("b.md", b"remote")
        release = asyncio.Event()
        original_download = remote.download_file

        async def gated_download(file_id: str) -> bytes:
            await release.wait()
            return await original_download(file_id)

        remote.download_file = gated_download  # type: ignore[method-assign]
        task = asyncio.create_task(engine.run_sync())
        await asyncio.sleep(0)

        second = await engine.run_push_now()
        release.set()
        await task

        assert second is None


class TestRemoteChanges:
    """Applying remote changes locally."""

    @pytest.mark.asyncio
    async def test_remote_deletion_moves_local_file_to_trash(self) -> None:
        """A remote delete moves the unchanged local file into the trash folder."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_delete("a.md")

        summary = await engine.run_sync()

        assert summary is not None
        assert "a.md" not in local.files
        trashed = [p for p in local.files if p.startswith(".obsidian/plugins/vaultsync/trash/")]
        assert len(trashed) == 1
        assert trashed[0].endswith("/a.md")
        assert engine.get_record("a.md") is None

    @pytest.mark.asyncio
    async def test_remote_deletion_keeps_locally_edited_file(self) -> None:
        """Local edits survive a remote delete and are uploaded again."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_delete("a.md")
        local.put("a.md", b"edited")

        await engine.run_sync()

        assert local.files["a.md"] == b"edited"
        assert remote.content_at("a.md") == b"edited"

    @pytest.mark.asyncio
    async def test_remote_rename_is_followed_locally(self) -> None:
        """A remote rename moves the local file and re-keys its record."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_rename("a.md", "notes/b.md")

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.pulled == 1
        assert "a.md" not in local.files
        assert local.files["notes/b.md"] == b"a"
        assert engine.get_record("a.md") is None
        assert engine.get_record("notes/b.md") is not None

    @pytest.mark.asyncio
    async def test_identical_untracked_local_file_is_adopted(self) -> None:
        """A remote file matching an untracked local file becomes synced without transfer."""
        remote = FakeRemoteStore()
        remote.put("n.md", b"same")
        local = MemoryLocalStore({"n.md": b"same"})
        engine = make_engine(remote, local)

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.created == 0
        assert remote.live_paths() == ["n.md"]
        record = engine.get_record("n.md")
        assert record is not None
        assert record.is_synced

    @pytest.mark.asyncio
    async def test_divergent_untracked_local_file_gets_remote_variant(self) -> None:
        """A colliding remote file is saved as a .remote variant next to the local one."""
        remote = FakeRemoteStore()
        remote.put("n.md", b"remote")
        local = MemoryLocalStore({"n.md": b"local"})
        engine = make_engine(remote, local)

        await engine.run_sync()

        assert local.files["n.md"] == b"local"
        assert local.files["n.remote.md"] == b"remote"
        assert remote.live_paths() == ["n.md"]
        assert remote.content_at("n.md") == b"local"

    @pytest.mark.asyncio
    async def test_excluded_remote_files_are_skipped(self) -> None:
        """Remote files under an excluded folder are never downloaded."""
        remote = FakeRemoteStore()
        remote.put("private/secret.md", b"s")
        local = MemoryLocalStore()
        engine = make_engine(remote, local, excluded_paths=["private"])

        await engine.run_sync()

        assert local.files == {}
        assert "download_file" not in remote.calls


class TestLocalChanges:
    """Pushing local changes."""

    @pytest.mark.asyncio
    async def test_local_edit_is_uploaded(self) -> None:
        """A changed local file is pushed as an update."""
        engine, remote, local, _ = await synced_pair({"a.md": b"v1"})
        local.put("a.md", b"v2")

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.updated == 1
        assert remote.content_at("a.md") == b"v2"

    @pytest.mark.asyncio
    async def test_local_move_becomes_remote_move(self) -> None:
        """A moved file with unchanged content is moved remotely, not re-uploaded."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        await local.rename("a.md", "notes/a.md")

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.renamed == 1
        assert summary.created == 0
        assert remote.live_paths() == ["notes/a.md"]
        assert "move_file" in remote.calls

    @pytest.mark.asyncio
    async def test_local_delete_trashes_remote_file(self) -> None:
        """A deleted local file is trashed remotely and its record dropped."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        await local.remove("a.md")

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.deleted == 1
        assert remote.live_paths() == []
        assert engine.get_record("a.md") is None

    @pytest.mark.asyncio
    async def test_debounced_change_is_queued_once(self) -> None:
        """Repeated change events for one path produce a single queue entry."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local, push_quiescence_ms=10)

        engine.notify_local_change("a.md")
        engine.notify_local_change("a.md")
        assert engine.get_pending_changes() == []

        await asyncio.sleep(0.05)

        pending = engine.get_pending_changes()
        assert [(e.action, e.path) for e in pending] == [(QueueAction.CREATE, "a.md")]

    @pytest.mark.asyncio
    async def test_rename_into_excluded_folder_becomes_delete(self) -> None:
        """Moving a tracked file under an excluded path queues a delete."""
        engine, _, _, _ = await synced_pair({"a.md": b"a"}, excluded_paths=["archive"])

        engine.notify_local_rename("a.md", "archive/a.md")

        pending = engine.get_pending_changes()
        assert [(e.action, e.path) for e in pending] == [(QueueAction.DELETE, "a.md")]

    @pytest.mark.asyncio
    async def test_rename_between_excluded_paths_is_ignored(self) -> None:
        """Renames that stay excluded queue nothing."""
        engine, _, _, _ = await synced_pair({}, excluded_paths=["archive"])

        engine.notify_local_rename("archive/a.md", "archive/b.md")

        assert engine.get_pending_changes() == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self) -> None:
        """A transient upload failure is retried within the same cycle."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local)
        remote.fail("create_file", TransientRemoteError("503", 503))

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.created == 1
        assert summary.errors == 0
        assert remote.calls.count("create_file") == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_drop_entry_with_error(self) -> None:
        """After the last retry the entry is dropped and an error is logged."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local, max_retries=2)
        remote.fail("create_file", *[TransientRemoteError("503", 503) for _ in range(3)])

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.errors == 1
        assert remote.calls.count("create_file") == 3
        assert engine.get_pending_changes() == []
        errors = [e for e in engine.get_all_activity_entries() if e.action is ActivityAction.ERROR]
        assert [e.path for e in errors] == ["a.md"]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self) -> None:
        """A 4xx failure is dropped after a single attempt."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a", "b.md": b"b"})
        engine = make_engine(remote, local)
        remote.fail("create_file", PermanentRemoteError("bad request", 400))

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.errors == 1
        assert summary.created == 1
        assert remote.calls.count("create_file") == 2


class TestConflictStrategies:
    """Strategy selection for non-merge conflicts."""

    @pytest.mark.asyncio
    async def test_conflict_file_strategy_keeps_both(self) -> None:
        """conflict-file keeps local and writes the remote copy to a sibling."""
        engine, remote, local, _ = await synced_pair(
            {"c.md": BASE.encode()}, md_conflict_strategy="conflict-file"
        )
        local.put("c.md", b"local version\n")
        remote.put("c.md", b"remote version\n")

        await engine.run_sync()

        assert local.files["c.md"] == b"local version\n"
        assert remote.content_at("c.md") == b"local version\n"
        siblings = [p for p in local.files if re.fullmatch(r"c\.sync-conflict-\d{8}-\d{6}\.md", p)]
        assert len(siblings) == 1
        assert local.files[siblings[0]] == b"remote version\n"
        # The sibling is a generated variant and is never uploaded.
        assert remote.live_paths() == ["c.md"]

    @pytest.mark.asyncio
    async def test_binary_last_modified_wins_picks_newer_local(self) -> None:
        """A newer local binary wins and is uploaded."""
        engine, remote, local, _ = await synced_pair({"img.png": b"\x89PNG0"})
        remote.put("img.png", b"\x89PNG-remote")
        local.put("img.png", b"\x89PNG-local", mtime=1_000_000.0)

        await engine.run_sync()

        assert local.files["img.png"] == b"\x89PNG-local"
        assert remote.content_at("img.png") == b"\x89PNG-local"

    @pytest.mark.asyncio
    async def test_binary_last_modified_wins_picks_newer_remote(self) -> None:
        """A newer remote binary overwrites the local copy."""
        engine, remote, local, _ = await synced_pair({"img.png": b"\x89PNG0"})
        local.put("img.png", b"\x89PNG-local", mtime=1.0)
        remote.put("img.png", b"\x89PNG-remote")

        await engine.run_sync()

        assert local.files["img.png"] == b"\x89PNG-remote"
        record = engine.get_record("img.png")
        assert record is not None
        assert record.is_synced


class TestStateTransitions:
    """Pause, offline and auth handling."""

    @pytest.mark.asyncio
    async def test_user_pause_makes_triggers_no_ops(self) -> None:
        """A paused engine ignores triggers until resumed."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local)

        engine.pause_sync()
        result = await engine.run_sync()

        assert result is None
        assert engine.state is SyncState.PAUSED
        assert engine.pause_reason is PauseReason.USER
        assert remote.calls == []

        summary = await engine.resume_sync()

        assert summary is not None
        assert summary.created == 1
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_unreachable_remote_sets_offline(self) -> None:
        """A remote that cannot be reached moves the engine offline."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        notifications: list[Notification] = []
        engine = make_engine(remote, local, notifications, max_retries=1)
        remote.offline = True

        result = await engine.run_sync()

        assert result is None
        assert engine.state is SyncState.OFFLINE
        assert [n.type for n in notifications] == [NotificationType.WARNING]

        remote.offline = False
        summary = await engine.run_sync()

        assert summary is not None
        assert summary.created == 1

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_token_once(self) -> None:
        """A single 401 is recovered by a forced token refresh."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore()
        tokens = AsyncMock()
        engine = SyncEngine(
            SyncSettings(retry_initial_backoff=0.0, duplicate_cleanup_interval_cycles=0),
            remote,
            local,
            token_provider=tokens,
        )
        remote.fail("get_start_page_token", UnauthorizedError())

        summary = await engine.run_sync()

        assert summary is not None
        tokens.refresh_after_unauthorized.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeated_unauthorized_sets_error(self) -> None:
        """A 401 after refresh escalates to the error state."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore()
        notifications: list[Notification] = []
        tokens = AsyncMock()
        engine = SyncEngine(
            SyncSettings(retry_initial_backoff=0.0),
            remote,
            local,
            token_provider=tokens,
            notifier=notifications.append,
        )
        remote.fail("get_start_page_token", UnauthorizedError(), UnauthorizedError())

        result = await engine.run_sync()

        assert result is None
        assert engine.state is SyncState.ERROR
        assert [n.type for n in notifications] == [NotificationType.ERROR]

    @pytest.mark.asyncio
    async def test_each_run_emits_one_notification(self) -> None:
        """A successful run yields exactly one INFO notification."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        notifications: list[Notification] = []
        engine = make_engine(remote, local, notifications)

        await engine.run_sync()

        assert len(notifications) == 1
        assert notifications[0].type is NotificationType.INFO
        assert "1 created" in notifications[0].message


class TestSurface:
    """Auxiliary engine operations."""

    @pytest.mark.asyncio
    async def test_selective_change_queues_newly_included_files(self) -> None:
        """Enabling video sync queues previously skipped videos."""
        engine, _, local, _ = await synced_pair({"a.md": b"a"})
        local.put("clip.mp4", b"video")
        previous = engine.settings
        enabled = SyncSettings.from_dict(
            {**previous.to_dict(), "selective": {**previous.to_dict()["selective"], "sync_video": True}}
        )

        engine.apply_settings(enabled)
        queued = await engine.handle_selective_sync_change(previous)

        assert queued == ["clip.mp4"]
        assert [e.path for e in engine.get_pending_changes()] == ["clip.mp4"]

    @pytest.mark.asyncio
    async def test_list_sync_ignored_files_merges_sources(self) -> None:
        """Ignored files are reported once per path with their source."""
        remote = FakeRemoteStore()
        remote.put("clip.mp4", b"v", mime_type="video/mp4")
        remote.put("only-remote.mov", b"v", mime_type="video/quicktime")
        local = MemoryLocalStore({"clip.mp4": b"v", "a.md": b"a", ".DS_Store": b"x"})
        engine = make_engine(remote, local)

        report = await engine.list_sync_ignored_files()

        assert report.remote_warning is None
        by_path = {e.path: e for e in report.entries}
        assert [e.path for e in report.entries] == sorted(by_path)
        assert by_path["clip.mp4"].source == "both"
        assert by_path["only-remote.mov"].source == "remote"
        assert by_path[".DS_Store"].source == "local"
        assert "a.md" not in by_path
        assert report.skip_counts.selective_sync == 2
        assert report.skip_counts.total == 2

    @pytest.mark.asyncio
    async def test_list_sync_ignored_files_reports_remote_failure(self) -> None:
        """A failed remote listing still returns local entries with a warning."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({".DS_Store": b"x"})
        engine = make_engine(remote, local)
        remote.fail("list_all_files", PermanentRemoteError("forbidden", 403))

        report = await engine.list_sync_ignored_files()

        assert report.remote_warning is not None
        assert [e.path for e in report.entries] == [".DS_Store"]

    @pytest.mark.asyncio
    async def test_restore_file_revision_becomes_new_head(self) -> None:
        """A restored revision is written in place and uploaded as the latest version."""
        engine, remote, local, _ = await synced_pair({"a.md": b"v1"})
        local.put("a.md", b"v2")
        await engine.run_sync()
        revisions = await engine.list_revisions("a.md")

        await engine.restore_file_revision("a.md", revisions[0].id)

        assert local.files["a.md"] == b"v1"
        assert remote.content_at("a.md") == b"v1"
        record = engine.get_record("a.md")
        assert record is not None
        assert record.is_synced
        assert engine.get_all_activity_entries()[0].action is ActivityAction.RESTORED

        summary = await engine.run_sync()
        assert summary is not None
        assert summary.pulled == 0
        assert summary.updated == 0

    @pytest.mark.asyncio
    async def test_restore_file_revision_waits_while_storage_is_full(self) -> None:
        """With storage full the restored file stays local and pending."""
        engine, remote, local, _ = await synced_pair({"a.md": b"v1"})
        local.put("a.md", b"v2")
        await engine.run_sync()
        revisions = await engine.list_revisions("a.md")
        remote.fail("update_file", StorageQuotaError())

        await engine.restore_file_revision("a.md", revisions[0].id)

        assert local.files["a.md"] == b"v1"
        assert remote.content_at("a.md") == b"v2"
        record = engine.get_record("a.md")
        assert record is not None
        assert record.status is RecordStatus.PENDING_PUSH
        assert record.local_hash == sha(b"v1")
        assert engine.pause_reason is PauseReason.STORAGE_FULL

    @pytest.mark.asyncio
    async def test_conflict_alerts_can_be_acknowledged(self) -> None:
        """Acknowledging conflict alerts resets the count."""
        engine, remote, local, _ = await synced_pair({"c.md": BASE.encode()})
        local.put("c.md", BASE.replace("line3", "LOCAL3").encode())
        remote.put("c.md", BASE.replace("line3", "REMOTE3").encode())
        await engine.run_sync()

        assert engine.conflict_alert_count == 1
        engine.acknowledge_conflict_alerts()
        assert engine.conflict_alert_count == 0

    @pytest.mark.asyncio
    async def test_rate_limit_and_quota_are_exposed(self) -> None:
        """Informational remote counters pass through the engine."""
        remote = FakeRemoteStore()
        engine = make_engine(remote, MemoryLocalStore())

        quota = await engine.get_storage_quota()
        snapshot = engine.get_rate_limit_snapshot()

        assert quota.limit is None
        assert snapshot.requests_today == 1

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path: Path) -> None:
        """Records persisted in the data dir are reloaded by a new engine."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        settings = SyncSettings(retry_initial_backoff=0.0, duplicate_cleanup_interval_cycles=0)
        first = SyncEngine(settings, remote, local, data_dir=tmp_path)
        await first.run_sync()
        first.close()

        second = SyncEngine(settings, remote, local, data_dir=tmp_path)
        summary = await second.run_sync()
        second.close()

        assert summary is not None
        assert summary.created == 0
        assert remote.calls.count("list_all_files") == 1


async def wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestLifecycle:
    """Tests for the background timer and duplicate cleanup."""

    @pytest.mark.asyncio
    async def test_start_runs_initial_sync(self) -> None:
        """start() syncs right away and stop() shuts the timer down."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"a.md": b"a"})
        engine = make_engine(remote, local, pull_interval_seconds=3600)

        await engine.start()
        await wait_until(lambda: remote.content_at("a.md") == b"a")
        await engine.stop()

        assert remote.live_paths() == ["a.md"]

    @pytest.mark.asyncio
    async def test_quiet_edit_is_pushed_after_start(self) -> None:
        """Once started, an edit is uploaded after the quiescence delay."""
        engine, remote, local, _ = await synced_pair(
            {"a.md": b"one"}, pull_interval_seconds=3600, push_quiescence_ms=10
        )
        await engine.start()

        local.put("a.md", b"two")
        engine.notify_local_change("a.md")
        await wait_until(lambda: remote.content_at("a.md") == b"two")
        await engine.stop()

    @pytest.mark.asyncio
    async def test_clean_duplicate_artifacts(self) -> None:
        """Identical remote and local duplicates are removed."""
        engine, remote, local, notifications = await synced_pair({"a.md": b"same"})
        remote.add_duplicate("a.md", b"same", modified_time=9_999_999_999.0)
        local.put("a.remote.md", b"same")

        summary = await engine.clean_duplicate_artifacts()

        assert summary is not None
        assert summary.remote_trashed == 1
        assert summary.local_removed == 1
        assert remote.live_paths() == ["a.md"]
        assert "a.remote.md" not in local.files
        assert [n.type for n in notifications] == [NotificationType.INFO]


class TestFailureHandling:
    """Failures that must not wedge the engine or lose state."""

    @pytest.mark.asyncio
    async def test_non_utf8_text_is_synced(self) -> None:
        """A Latin-1 note is uploaded alongside its neighbours."""
        remote = FakeRemoteStore()
        local = MemoryLocalStore({"latin1.md": b"caf\xe9\n", "ok.md": b"ok\n"})
        engine = make_engine(remote, local)

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.created == 2
        assert remote.content_at("latin1.md") == b"caf\xe9\n"
        assert remote.content_at("ok.md") == b"ok\n"
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_exception_sets_error(self) -> None:
        """An unforeseen exception ends the cycle in ERROR with one notification."""
        engine, remote, _, notifications = await synced_pair({"a.md": b"a"})
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        remote.list_changed_files = failing  # type: ignore[method-assign]

        result = await engine.run_sync()

        assert result is None
        assert engine.state is SyncState.ERROR
        assert [n.type for n in notifications] == [NotificationType.ERROR]
        latest = engine.get_all_activity_entries()[0]
        assert latest.action is ActivityAction.ERROR
        assert latest.error == "boom"

        del remote.list_changed_files
        assert await engine.run_sync() is not None
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_remote_path_outside_vault_is_skipped(self) -> None:
        """A remote path with `..` segments is logged and never written."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.put("../outside.md", b"x")

        summary = await engine.run_sync()

        assert summary is not None
        assert summary.errors == 1
        assert sorted(local.files) == ["a.md"]
        errors = [e for e in engine.get_all_activity_entries() if e.action is ActivityAction.ERROR]
        assert [e.path for e in errors] == ["../outside.md"]

        again = await engine.run_sync()
        assert again is not None
        assert again.errors == 0

    @pytest.mark.asyncio
    async def test_permanent_download_failure_advances_page_token(self) -> None:
        """A change that can never be applied is not fetched again next cycle."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.put("a.md", b"remote edit")
        remote.fail("download_file", NotFoundError("a.md"))

        summary = await engine.run_sync()
        assert summary is not None
        assert summary.errors == 1

        await engine.run_sync()

        assert remote.calls.count("download_file") == 1
        assert local.files["a.md"] == b"a"

    @pytest.mark.asyncio
    async def test_remote_variant_records_local_hash(self) -> None:
        """The pending record for a colliding local file holds its real hash."""
        remote = FakeRemoteStore()
        remote.put("n.md", b"remote")
        local = MemoryLocalStore({"n.md": b"local"})
        engine = make_engine(remote, local)

        await engine.run_pull_now()

        record = engine.get_record("n.md")
        assert record is not None
        assert record.status is RecordStatus.PENDING_PUSH
        assert record.local_hash == sha(b"local")
        assert record.remote_hash == sha(b"remote")

    @pytest.mark.asyncio
    async def test_create_then_delete_of_adopted_file_trashes_remote(self) -> None:
        """Deleting a file adopted while its create was queued deletes it remotely."""
        remote = FakeRemoteStore()
        remote.put("a.md", b"same")
        local = MemoryLocalStore({"a.md": b"same"})
        engine = make_engine(remote, local)
        engine.queue_path_for_push("a.md")
        await engine.run_pull_now()
        assert engine.get_record("a.md") is not None

        await local.remove("a.md")
        engine.notify_local_delete("a.md")

        assert [(e.action, e.path) for e in engine.get_pending_changes()] == [
            (QueueAction.DELETE, "a.md")
        ]
        await engine.run_sync()
        assert remote.live_paths() == []

    @pytest.mark.asyncio
    async def test_failed_full_resync_keeps_records_and_queue(self) -> None:
        """A re-sync whose listing fails leaves records and pending changes intact."""
        engine, remote, local, notifications = await synced_pair({"a.md": b"a"})
        local.put("a.md", b"edited")
        engine.queue_path_for_push("a.md")
        remote.fail("list_all_files", PermanentRemoteError("forbidden", 403))

        result = await engine.force_full_resync()

        assert result is None
        assert engine.state is SyncState.ERROR
        assert engine.get_record("a.md") is not None
        assert [e.path for e in engine.get_pending_changes()] == ["a.md"]
        assert [n.type for n in notifications] == [NotificationType.ERROR]

    @pytest.mark.asyncio
    async def test_default_notifier_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        """Without a notifier, outcomes still reach the log."""
        settings = SyncSettings(retry_initial_backoff=0.0, duplicate_cleanup_interval_cycles=0)
        engine = SyncEngine(settings, FakeRemoteStore(), MemoryLocalStore({"a.md": b"a"}))

        with caplog.at_level(logging.INFO, logger="vaultsync.sync.notifications"):
            await engine.run_sync()

        assert any(r.getMessage().startswith("Sync complete:") for r in caplog.records)


class TestTrashRestore:
    """Restoring files from the local and remote trash."""

    @pytest.mark.asyncio
    async def test_restore_local_trash_file(self) -> None:
        """A file trashed after a remote delete goes back and is uploaded again."""
        engine, remote, local, _ = await synced_pair({"notes/a.md": b"a"})
        remote.remote_delete("notes/a.md")
        await engine.run_sync()
        ((trash_path, original),) = await engine.list_local_trash()
        assert original == "notes/a.md"

        target = await engine.restore_local_trash_file(trash_path, original)

        assert target == "notes/a.md"
        assert local.files[target] == b"a"
        assert trash_path not in local.files
        assert [e.path for e in engine.get_pending_changes()] == ["notes/a.md"]
        assert engine.get_all_activity_entries()[0].action is ActivityAction.RESTORED

        await engine.run_sync()
        assert remote.live_paths() == ["notes/a.md"]

    @pytest.mark.asyncio
    async def test_restore_local_trash_file_avoids_overwrite(self) -> None:
        """An occupied destination gets a restored sibling instead."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_delete("a.md")
        await engine.run_sync()
        ((trash_path, original),) = await engine.list_local_trash()
        local.put("a.md", b"new")

        target = await engine.restore_local_trash_file(trash_path, original)

        assert re.fullmatch(r"a\.restored-\d{8}-\d{6}\.md", target)
        assert local.files[target] == b"a"
        assert local.files["a.md"] == b"new"

    @pytest.mark.asyncio
    async def test_restore_from_remote_trash(self) -> None:
        """An untrashed remote file is downloaded and tracked as synced."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_delete("a.md")
        await engine.run_sync()
        (trashed,) = await engine.list_remote_trash()

        target = await engine.restore_from_remote_trash(trashed.id)

        assert target == "a.md"
        assert local.files["a.md"] == b"a"
        assert remote.live_paths() == ["a.md"]
        record = engine.get_record("a.md")
        assert record is not None
        assert record.is_synced

        summary = await engine.run_sync()
        assert summary is not None
        assert summary.pulled == 0
        assert summary.created == 0

    @pytest.mark.asyncio
    async def test_restore_from_remote_trash_to_new_path(self) -> None:
        """A preferred path moves the remote file to match."""
        engine, remote, local, _ = await synced_pair({"a.md": b"a"})
        remote.remote_delete("a.md")
        await engine.run_sync()
        (trashed,) = await engine.list_remote_trash()

        target = await engine.restore_from_remote_trash(trashed.id, "notes/b.md")

        assert target == "notes/b.md"
        assert local.files["notes/b.md"] == b"a"
        assert remote.live_paths() == ["notes/b.md"]
