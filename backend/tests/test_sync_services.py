"""Tests for the sync services: detection, upload, download and resolution."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from app.errors import InvalidResolutionError, SyncValidationError
from app.models import TaskPayload
from app.stores.base import TaskFields, TaskRecord
from app.sync import SyncAction, detect, download, resolve, upload
from app.sync.upload import MAX_APPLY_ATTEMPTS

T0 = "2024-01-01T00:00:00Z"
T5 = "2024-01-01T00:00:05Z"


def _record(**overrides) -> TaskRecord:
    defaults = dict(
        id=1,
        user_id=1,
        title="Server copy",
        client_id="a",
        updated_at=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        version=3,
    )
    defaults.update(overrides)
    return TaskRecord(**defaults)


class TestDetect:
    """Tests for the conflict detector decision."""

    def test_no_stored_task_creates(self):
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": T0})
        assert detect(incoming, None).action is SyncAction.CREATE

    def test_newer_server_copy_conflicts(self):
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": T0})
        detection = detect(incoming, _record())
        assert detection.action is SyncAction.CONFLICT
        assert detection.current.id == 1

    def test_newer_client_copy_updates(self):
        incoming = TaskPayload.from_wire(
            {"client_id": "a", "title": "x", "updated_at": "2024-01-02T00:00:00Z"}
        )
        assert detect(incoming, _record()).action is SyncAction.UPDATE

    def test_missing_client_timestamp_conflicts(self):
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x"})
        assert detect(incoming, _record()).action is SyncAction.CONFLICT

    def test_unparsable_client_timestamp_conflicts(self):
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": "yesterday-ish"})
        assert incoming.updated_at is None
        assert detect(incoming, _record()).action is SyncAction.CONFLICT

    def test_equal_timestamps_follow_tie_break(self):
        stamp = "2024-01-01T12:00:00Z"
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": stamp})
        assert detect(incoming, _record(), tie_break="client").action is SyncAction.UPDATE
        assert detect(incoming, _record(), tie_break="server").action is SyncAction.CONFLICT

    def test_server_tie_break_lets_current_version_through(self):
        """A tie from a client holding the stored version is an echo, not a rival edit."""
        stamp = "2024-01-01T12:00:00Z"
        echo = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": stamp, "version": 3})
        stale = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": stamp, "version": 2})
        assert detect(echo, _record(), tie_break="server").action is SyncAction.UPDATE
        assert detect(stale, _record(), tie_break="server").action is SyncAction.CONFLICT

    def test_recorded_client_stamp_takes_precedence(self):
        """A copy the client itself wrote is ordered by the client's own timestamp."""
        current = _record(
            updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            client_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        incoming = TaskPayload.from_wire({"client_id": "a", "title": "x", "updated_at": T5})
        assert detect(incoming, current).action is SyncAction.UPDATE


class TestUpload:
    """Tests for the upload processor."""

    @pytest.mark.asyncio
    async def test_create_then_update_scenario(self, store, user):
        """Buy milk: created against an empty store, then updated by a later copy."""
        first = await upload(
            store, user.id, [{"clientId": "a", "title": "Buy milk", "updatedAt": T0}]
        )
        assert first.conflicts == []
        assert len(first.processed) == 1
        assert first.processed[0].client_id == "a"
        assert first.processed[0].action == "created"
        server_id = first.processed[0].server_id
        assert isinstance(server_id, int)

        second = await upload(
            store, user.id, [{"clientId": "a", "title": "Buy milk and eggs", "updatedAt": T5}]
        )
        assert second.conflicts == []
        assert [(p.client_id, p.server_id, p.action) for p in second.processed] == [
            ("a", server_id, "updated")
        ]
        assert store.get_task(user.id, server_id).title == "Buy milk and eggs"

    @pytest.mark.asyncio
    async def test_reupload_same_batch_updates_and_bumps_version_once(self, store, user):
        batch = [{"client_id": "a", "title": "Buy milk", "updated_at": T0}]
        first = await upload(store, user.id, batch)
        server_id = first.processed[0].server_id
        assert store.get_task(user.id, server_id).version == 1

        for expected_version in (2, 3):
            result = await upload(store, user.id, batch)
            assert result.conflicts == []
            assert [p.action for p in result.processed] == ["updated"]
            assert store.get_task(user.id, server_id).version == expected_version

    @pytest.mark.asyncio
    async def test_stale_copy_conflicts_and_leaves_store_untouched(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "Newer", "updated_at": T5}])
        before = store.get_task_by_client_id(user.id, "a")

        result = await upload(store, user.id, [{"client_id": "a", "title": "Older", "updated_at": T0}])

        assert result.processed == []
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.client_id == "a"
        assert conflict.conflict_type == "update_conflict"
        assert conflict.server_task.title == "Newer"
        assert conflict.client_task["title"] == "Older"
        after = store.get_task_by_client_id(user.id, "a")
        assert (after.title, after.version, after.updated_at) == (before.title, before.version, before.updated_at)

    @pytest.mark.asyncio
    async def test_direct_edit_after_sync_conflicts_with_old_copy(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "Synced", "updated_at": T0}])
        current = store.get_task_by_client_id(user.id, "a")
        store.update_task_if_version(user.id, current, TaskFields(title="Edited on the web"))

        result = await upload(store, user.id, [{"client_id": "a", "title": "Synced", "updated_at": T5}])

        assert [c.conflict_type for c in result.conflicts] == ["update_conflict"]
        assert store.get_task_by_client_id(user.id, "a").title == "Edited on the web"

    @pytest.mark.asyncio
    async def test_server_tie_break_accepts_untouched_downloaded_copy(self, store, user):
        """A task written outside sync, downloaded and sent back unchanged, is not a conflict."""
        store.insert_task(user.id, TaskFields(title="Created on the web"), client_id="a")

        for _ in range(2):
            [record] = (await download(store, user.id)).tasks
            echo = {
                "client_id": "a",
                "title": record.title,
                "updated_at": (record.client_updated_at or record.updated_at).isoformat(),
                "version": record.version,
            }
            result = await upload(store, user.id, [echo], tie_break="server")
            assert result.conflicts == []
            assert [p.action for p in result.processed] == ["updated"]

    @pytest.mark.asyncio
    async def test_malformed_item_does_not_abort_batch(self, store, user):
        batch = [
            {"client_id": "one", "title": "First", "updated_at": T0},
            {"client_id": "two", "description": "no title", "updated_at": T0},
            {"client_id": "three", "title": "Third", "updated_at": T0},
        ]
        result = await upload(store, user.id, batch)

        assert [p.client_id for p in result.processed] == ["one", "three"]
        assert len(result.conflicts) == 1
        error = result.conflicts[0]
        assert error.client_id == "two"
        assert error.conflict_type == "processing_error"
        assert error.error_category == "validation"
        assert "title" in error.error
        assert store.get_task_by_client_id(user.id, "two") is None

    @pytest.mark.asyncio
    async def test_non_object_item_is_a_processing_error(self, store, user):
        result = await upload(store, user.id, ["not a task", {"client_id": "ok", "title": "Fine", "updated_at": T0}])
        assert [p.client_id for p in result.processed] == ["ok"]
        assert result.conflicts[0].conflict_type == "processing_error"
        assert result.conflicts[0].client_id is None

    @pytest.mark.asyncio
    async def test_store_failure_is_a_server_processing_error(self, store, user):
        broken = MagicMock(wraps=store)
        broken.insert_task.side_effect = RuntimeError("disk on fire")

        result = await upload(broken, user.id, [{"client_id": "a", "title": "x", "updated_at": T0}])

        assert result.processed == []
        conflict = result.conflicts[0]
        assert conflict.error_category == "server"
        assert "disk on fire" not in conflict.error

    @pytest.mark.asyncio
    async def test_lost_race_is_retried(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "v1", "updated_at": T0}])
        racing = MagicMock(wraps=store)

        def lose_once(owner_id, current, fields):
            # A concurrent writer wins the first attempt
            racing.update_task_if_version.side_effect = store.update_task_if_version
            return None

        racing.update_task_if_version.side_effect = lose_once
        result = await upload(racing, user.id, [{"client_id": "a", "title": "v2", "updated_at": T5}])

        assert [p.action for p in result.processed] == ["updated"]
        assert racing.update_task_if_version.call_count == 2
        assert store.get_task_by_client_id(user.id, "a").title == "v2"

    @pytest.mark.asyncio
    async def test_persistent_race_gives_up(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "v1", "updated_at": T0}])
        racing = MagicMock(wraps=store)
        racing.update_task_if_version.side_effect = lambda *args: None

        result = await upload(racing, user.id, [{"client_id": "a", "title": "v2", "updated_at": T5}])

        assert racing.update_task_if_version.call_count == MAX_APPLY_ATTEMPTS
        assert result.conflicts[0].error_category == "server"

    @pytest.mark.asyncio
    async def test_last_sync_set_once_even_with_conflicts(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "x", "updated_at": T5}])
        spy = MagicMock(wraps=store)

        result = await upload(
            spy,
            user.id,
            [
                {"client_id": "a", "title": "stale", "updated_at": T0},
                {"client_id": "b"},
            ],
        )

        assert len(result.conflicts) == 2
        spy.set_last_sync.assert_called_once_with(user.id, result.timestamp)
        assert store.get_user(user.id).last_sync == result.timestamp

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_server_id(self, store, user):
        record = store.insert_task(user.id, TaskFields(title="Made on the web"))
        result = await upload(
            store, user.id, [{"id": record.id, "client_id": "local-1", "title": "Renamed", "updated_at": "2099-01-01T00:00:00Z"}]
        )
        assert [(p.server_id, p.action) for p in result.processed] == [(record.id, "updated")]
        assert store.get_task(user.id, record.id).title == "Renamed"

    @pytest.mark.asyncio
    async def test_soft_delete_propagates_and_is_terminal(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "x", "updated_at": T0}])
        await upload(store, user.id, [{"client_id": "a", "title": "x", "updated_at": T5, "isDeleted": True}])
        deleted = store.get_task_by_client_id(user.id, "a")
        assert deleted.is_deleted

        later = (datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=1)).isoformat()
        await upload(store, user.id, [{"client_id": "a", "title": "revived?", "updated_at": later}])
        assert store.get_task_by_client_id(user.id, "a").deleted_at == deleted.deleted_at

    @pytest.mark.asyncio
    async def test_not_a_list_is_rejected(self, store, user):
        with pytest.raises(SyncValidationError):
            await upload(store, user.id, {"client_id": "a"})

    @pytest.mark.asyncio
    async def test_oversized_batch_is_rejected(self, store, user):
        batch = [{"client_id": str(i), "title": "x", "updated_at": T0} for i in range(4)]
        with pytest.raises(SyncValidationError):
            await upload(store, user.id, batch, max_batch_size=3)
        assert store.count_tasks(user.id) == 0
        assert store.get_user(user.id).last_sync is None


class TestDownload:
    """Tests for the download provider."""

    @pytest.mark.asyncio
    async def test_returns_everything_without_since(self, store, user, other_user):
        await upload(store, user.id, [{"client_id": c, "title": c, "updated_at": T0} for c in "abc"])
        await upload(store, other_user.id, [{"client_id": "z", "title": "not mine", "updated_at": T0}])

        result = await download(store, user.id)

        assert [t.client_id for t in result.tasks] == ["a", "b", "c"]
        stamps = [t.updated_at for t in result.tasks]
        assert stamps == sorted(stamps)

    @pytest.mark.asyncio
    async def test_includes_deleted_tasks(self, store, user):
        first = await download(store, user.id)
        await upload(store, user.id, [{"client_id": "a", "title": "x", "updated_at": T0}])
        current = store.get_task_by_client_id(user.id, "a")
        store.soft_delete_task(user.id, current)

        result = await download(store, user.id, first.timestamp)

        assert [(t.client_id, t.is_deleted) for t in result.tasks] == [("a", True)]

    @pytest.mark.asyncio
    async def test_checkpoint_excludes_older_changes(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "old", "updated_at": T0}])
        checkpoint = (await download(store, user.id)).timestamp

        assert (await download(store, user.id, checkpoint)).tasks == []

        await upload(store, user.id, [{"client_id": "b", "title": "new", "updated_at": T0}])
        result = await download(store, user.id, checkpoint)
        assert [t.client_id for t in result.tasks] == ["b"]
        assert all(t.updated_at > checkpoint for t in result.tasks)

    @pytest.mark.asyncio
    async def test_timestamp_is_sampled_before_query(self, store, user):
        spy = MagicMock(wraps=store)
        seen = {}

        def changed_since(owner_id, since):
            seen["at"] = datetime.now(timezone.utc)
            return store.changed_since(owner_id, since)

        spy.changed_since.side_effect = changed_since
        result = await download(spy, user.id)
        assert result.timestamp <= seen["at"]


class TestResolve:
    """Tests for the conflict resolver."""

    @pytest.mark.asyncio
    async def test_use_server_never_writes(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "server", "updated_at": T5}])
        before = store.get_task_by_client_id(user.id, "a")

        for _ in range(2):
            assert await resolve(store, user.id, "a", "use_server") is False

        after = store.get_task_by_client_id(user.id, "a")
        assert (after.title, after.version) == (before.title, before.version)

    @pytest.mark.asyncio
    async def test_use_client_overwrites_and_converges(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "server", "updated_at": T5}])
        data = {"client_id": "a", "title": "client wins", "priority": "high", "tags": ["x"], "updated_at": T0}

        assert await resolve(store, user.id, "a", "use_client", data) is True
        once = store.get_task_by_client_id(user.id, "a")
        assert await resolve(store, user.id, "a", "use_client", data) is True
        twice = store.get_task_by_client_id(user.id, "a")

        assert (once.title, once.priority, once.tags) == ("client wins", "high", ["x"])
        assert (twice.title, twice.priority, twice.tags) == (once.title, once.priority, once.tags)
        assert twice.version == once.version + 1
        assert twice.updated_at > once.updated_at

    @pytest.mark.asyncio
    async def test_resolved_copy_uploads_cleanly(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "server", "updated_at": T5}])
        stale = {"client_id": "a", "title": "mine", "updated_at": T0}
        assert (await upload(store, user.id, [stale])).conflicts

        await resolve(store, user.id, "a", "use_client", stale)
        result = await upload(store, user.id, [stale])

        assert result.conflicts == []
        assert store.get_task_by_client_id(user.id, "a").title == "mine"

    @pytest.mark.asyncio
    async def test_use_client_on_missing_task_is_noop(self, store, user):
        assert await resolve(store, user.id, "ghost", "use_client", {"title": "x"}) is False
        assert store.count_tasks(user.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_resolution_rejected(self, store, user):
        with pytest.raises(InvalidResolutionError):
            await resolve(store, user.id, "a", "use_both")

    @pytest.mark.asyncio
    async def test_use_client_requires_valid_data(self, store, user):
        await upload(store, user.id, [{"client_id": "a", "title": "server", "updated_at": T5}])
        with pytest.raises(SyncValidationError):
            await resolve(store, user.id, "a", "use_client")
        with pytest.raises(SyncValidationError):
            await resolve(store, user.id, "a", "use_client", {"title": ""})
