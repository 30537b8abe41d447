"""Tests for the client reconciliation engine."""

import pytest

from todosync.errors import ConflictsPending, TransientError
from todosync.models import LocalTask, parse_datetime
from todosync.sync_engine import (
    ReconciliationEngine,
    SyncConflict,
    SyncState,
    merge_tasks,
)


def server_task(server_id, client_id, title="Server copy", **overrides):
    """A task dict as the backend returns it."""
    task = {
        "id": server_id,
        "client_id": client_id,
        "title": title,
        "description": None,
        "completed": False,
        "priority": "medium",
        "category": "personal",
        "due_date": None,
        "tags": [],
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-02-01T00:00:00+00:00",
        "deleted_at": None,
        "client_updated_at": None,
        "version": 2,
        "is_deleted": False,
    }
    task.update(overrides)
    return task


def _conflict(client_id, server=None, conflict_type="update_conflict", **extra):
    return {
        "client_id": client_id,
        "conflict_type": conflict_type,
        "server_todo": server,
        "client_todo": {"client_id": client_id, "title": "local"},
        **extra,
    }


def _upload_response(processed=(), conflicts=()):
    return {
        "success": True,
        "processed": list(processed),
        "conflicts": list(conflicts),
        "timestamp": "2024-03-01T00:00:00+00:00",
    }


class TestMergeTasks:
    """Result = server tasks + local tasks neither acknowledged nor returned."""

    def test_merge_rule(self):
        local = [
            LocalTask(client_id="acked", title="uploaded"),
            LocalTask(client_id="pending", title="not acknowledged"),
            LocalTask(client_id="both", title="old local"),
        ]
        processed = [{"client_id": "acked", "server_id": 1, "action": "updated"}]
        server = [server_task(3, "both", title="from server"), server_task(4, "remote", title="new elsewhere")]

        merged = {t.client_id: t for t in merge_tasks(local, processed, server)}

        assert set(merged) == {"both", "remote", "pending"}
        assert merged["both"].title == "from server"
        assert merged["pending"].title == "not acknowledged"

    def test_created_tasks_take_server_id(self):
        local = [LocalTask(client_id="new", title="x")]
        processed = [{"client_id": "new", "server_id": 42, "action": "created"}]

        # A server copy without client_id is matched through the new server id
        merged = merge_tasks(local, processed, [server_task(42, None, title="x")])

        assert [(t.client_id, t.server_id) for t in merged] == [("new", 42)]

    def test_server_task_without_any_key_gets_fresh_client_id(self):
        merged = merge_tasks([], [], [server_task(9, None)])
        assert merged[0].client_id
        assert merged[0].server_id == 9

    def test_tasks_changed_since_upload_are_kept(self):
        sent = LocalTask(client_id="a", title="as uploaded")
        edited = LocalTask(client_id="a", title="edited after upload")
        fresh = LocalTask(client_id="b", title="new after upload")
        processed = [{"client_id": "a", "server_id": 1, "action": "updated"}]

        merged = merge_tasks([edited, fresh], processed, [server_task(1, "a", title="as uploaded")], {"a": sent})

        assert {t.client_id: t.title for t in merged} == {"a": "edited after upload", "b": "new after upload"}

    def test_deleted_server_tasks_are_kept_as_deleted(self):
        merged = merge_tasks([], [], [server_task(1, "a", is_deleted=True, deleted_at="2024-02-02T00:00:00Z")])
        assert merged[0].is_deleted


class TestSyncCycle:
    def test_offline_keeps_everything(self, storage, api):
        storage.add_task("offline edit")
        api.is_online.return_value = False
        engine = ReconciliationEngine(storage, api)

        result = engine.sync()

        assert not result.success
        assert engine.state is SyncState.IDLE
        api.upload_sync.assert_not_called()
        assert [t.title for t in storage.list_tasks()] == ["offline edit"]

    def test_full_cycle_rewrites_ids_and_advances_checkpoint(self, storage, api):
        task = storage.add_task("Buy milk")
        states = []

        def upload(todos, last_sync):
            states.append(engine.state)
            assert [t["client_id"] for t in todos] == [task.client_id]
            assert last_sync is None
            return _upload_response(processed=[{"client_id": task.client_id, "server_id": 7, "action": "created"}])

        def download(since):
            states.append(engine.state)
            return {
                "todos": [server_task(7, task.client_id, title="Buy milk", version=1)],
                "timestamp": "2024-03-01T00:00:05+00:00",
            }

        api.upload_sync.side_effect = upload
        api.download_sync.side_effect = download
        engine = ReconciliationEngine(storage, api)

        result = engine.sync()

        assert result.success
        assert (result.uploaded, result.created, result.downloaded) == (1, 1, 1)
        assert states == [SyncState.UPLOADING, SyncState.DOWNLOADING]
        assert engine.state is SyncState.IDLE
        assert storage.get_task(task.client_id).server_id == 7
        assert storage.get_last_sync() == parse_datetime("2024-03-01T00:00:05Z")
        assert result.checkpoint == storage.get_last_sync()

    def test_next_cycle_sends_checkpoint(self, storage, api):
        engine = ReconciliationEngine(storage, api)
        engine.sync()
        engine.sync()

        last_call = api.download_sync.call_args_list[-1]
        assert last_call.args[0] == parse_datetime("2024-03-01T00:00:00Z")
        assert api.upload_sync.call_args_list[-1].args[1] == parse_datetime("2024-03-01T00:00:00Z")

    def test_conflicts_halt_before_download(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, server_task(1, task.client_id))])
        engine = ReconciliationEngine(storage, api)

        result = engine.sync()

        assert engine.state is SyncState.AWAITING_RESOLUTION
        assert [c.client_id for c in result.conflicts] == [task.client_id]
        api.download_sync.assert_not_called()
        assert storage.get_last_sync() is None
        assert storage.get_task(task.client_id).title == "mine"

    def test_sync_refused_while_conflicts_pending(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, None)])
        engine = ReconciliationEngine(storage, api)
        engine.sync()

        with pytest.raises(ConflictsPending) as exc_info:
            engine.sync()
        assert exc_info.value.client_ids == [task.client_id]

    def test_download_failure_leaves_replica_and_checkpoint(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(
            processed=[{"client_id": task.client_id, "server_id": 3, "action": "created"}]
        )
        api.download_sync.side_effect = TransientError("Cannot reach backend: timed out")
        engine = ReconciliationEngine(storage, api)
        before = storage.all_tasks()

        result = engine.sync()

        assert result.errors == ["Cannot reach backend: timed out"]
        assert engine.state is SyncState.IDLE
        assert storage.all_tasks() == before
        assert storage.get_last_sync() is None

    def test_upload_failure_is_not_retried(self, storage, api):
        storage.add_task("mine")
        api.upload_sync.side_effect = TransientError("Cannot reach backend")
        engine = ReconciliationEngine(storage, api)

        result = engine.sync()

        assert result.errors
        assert api.upload_sync.call_count == 1
        api.download_sync.assert_not_called()

    def test_cancel_between_steps(self, storage, api):
        storage.add_task("mine")
        engine = ReconciliationEngine(storage, api)

        def upload(todos, last_sync):
            engine.cancel()
            return _upload_response()

        api.upload_sync.side_effect = upload

        result = engine.sync()

        assert result.errors == ["Sync cancelled"]
        assert engine.state is SyncState.IDLE
        api.download_sync.assert_not_called()
        assert storage.get_last_sync() is None

    def test_merge_drops_acknowledged_tasks_missing_from_download(self, storage, api):
        """The server copy is authoritative once a task was accepted."""
        kept = storage.add_task("not uploaded yet")
        acked = storage.add_task("accepted")
        api.upload_sync.return_value = _upload_response(
            processed=[{"client_id": acked.client_id, "server_id": 1, "action": "updated"}]
        )
        api.download_sync.return_value = {
            "todos": [server_task(1, acked.client_id, title="accepted (server)")],
            "timestamp": "2024-03-01T00:00:00+00:00",
        }

        ReconciliationEngine(storage, api).sync()

        titles = {t.client_id: t.title for t in storage.all_tasks()}
        assert titles == {kept.client_id: "not uploaded yet", acked.client_id: "accepted (server)"}

    def test_task_added_during_download_survives_merge(self, storage, api):
        storage.add_task("existing")
        added = []

        def download(since):
            # Another process writes to the same replica while the request is in flight
            added.append(storage.add_task("added mid-sync"))
            return {"todos": [], "timestamp": "2024-03-01T00:00:00+00:00"}

        api.download_sync.side_effect = download

        result = ReconciliationEngine(storage, api).sync()

        assert result.success
        assert storage.get_task(added[0].client_id) is not None
        assert {t.title for t in storage.list_tasks()} == {"existing", "added mid-sync"}

    def test_edit_during_download_wins_over_server_copy(self, storage, api):
        task = storage.add_task("uploaded title")
        api.upload_sync.return_value = _upload_response(
            processed=[{"client_id": task.client_id, "server_id": 7, "action": "created"}]
        )

        def download(since):
            storage.update_task(task.client_id, title="edited mid-sync")
            return {
                "todos": [server_task(7, task.client_id, title="uploaded title", version=1)],
                "timestamp": "2024-03-01T00:00:00+00:00",
            }

        api.download_sync.side_effect = download

        assert ReconciliationEngine(storage, api).sync().success

        local = storage.get_task(task.client_id)
        assert (local.title, local.server_id) == ("edited mid-sync", 7)


class TestConflictResolution:
    def _engine_with_conflict(self, storage, api, server=None, conflict_type="update_conflict"):
        task = storage.add_task("local title")
        api.upload_sync.return_value = _upload_response(
            conflicts=[_conflict(task.client_id, server, conflict_type=conflict_type)]
        )
        engine = ReconciliationEngine(storage, api)
        engine.sync()
        api.upload_sync.return_value = _upload_response()
        return engine, task

    def test_use_server_adopts_server_copy_and_resyncs(self, storage, api):
        engine, task = self._engine_with_conflict(
            storage, api, server=server_task(5, None, title="server title")
        )

        result = engine.resolve_conflict(task.client_id, "use_server")

        api.resolve_conflict.assert_called_once_with(task.client_id, "use_server")
        assert api.upload_sync.call_count == 2
        assert result.success
        assert engine.state is SyncState.IDLE
        assert engine.pending_conflicts == []

    def test_use_server_saves_server_copy_locally(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, server=server_task(5, None, title="server title"))

        engine.resolve_conflict(task.client_id, "use_server")

        local = storage.get_task(task.client_id)
        assert (local.title, local.server_id) == ("server title", 5)

    def test_use_server_on_server_deletion_marks_local_deleted(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, server=None)
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict("other", None)])

        engine.resolve_conflict(task.client_id, "use_server")

        assert storage.get_task(task.client_id).is_deleted

    def test_use_client_sends_local_copy_and_bumps_timestamp(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, server=server_task(5, None))
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict("other", None)])

        engine.resolve_conflict(task.client_id, "use_client")

        client_id, resolution, data = api.resolve_conflict.call_args.args
        assert (client_id, resolution) == (task.client_id, "use_client")
        assert data["title"] == "local title"
        assert storage.get_task(task.client_id).updated_at > task.updated_at

    def test_processing_error_use_server_discards_local(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, conflict_type="processing_error")

        engine.resolve_conflict(task.client_id, "use_server")

        api.resolve_conflict.assert_not_called()
        assert storage.get_task(task.client_id) is None

    def test_processing_error_use_client_keeps_local(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, conflict_type="processing_error")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, None, conflict_type="processing_error")])

        engine.resolve_conflict(task.client_id, "use_client")

        assert storage.get_task(task.client_id) is not None
        assert engine.state is SyncState.AWAITING_RESOLUTION

    def test_partial_resolution_does_not_resync(self, storage, api):
        first = storage.add_task("one")
        second = storage.add_task("two")
        api.upload_sync.return_value = _upload_response(
            conflicts=[_conflict(first.client_id, None), _conflict(second.client_id, None)]
        )
        engine = ReconciliationEngine(storage, api)
        engine.sync()

        assert engine.resolve_conflict(first.client_id, "use_server") is None
        assert api.upload_sync.call_count == 1
        assert engine.state is SyncState.AWAITING_RESOLUTION

        api.upload_sync.return_value = _upload_response()
        assert engine.resolve_conflict(second.client_id, "use_server").success
        assert api.upload_sync.call_count == 2

    def test_resolve_all(self, storage, api):
        a = storage.add_task("a")
        b = storage.add_task("b")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(a.client_id, None), _conflict(b.client_id, None)])
        engine = ReconciliationEngine(storage, api)
        engine.sync()
        api.upload_sync.return_value = _upload_response()

        result = engine.resolve_all("use_client")

        assert result.success
        assert api.resolve_conflict.call_count == 2

    def test_unknown_conflict(self, storage, api):
        with pytest.raises(KeyError):
            ReconciliationEngine(storage, api).resolve_conflict("nope", "use_server")

    def test_invalid_resolution(self, storage, api):
        engine, task = self._engine_with_conflict(storage, api, server=None)
        with pytest.raises(ValueError):
            engine.resolve_conflict(task.client_id, "use_both")
        assert engine.pending_conflicts


class TestConflictPolicy:
    def test_policy_resolves_and_reuploads(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.side_effect = [
            _upload_response(conflicts=[_conflict(task.client_id, server_task(1, task.client_id))]),
            _upload_response(processed=[{"client_id": task.client_id, "server_id": 1, "action": "updated"}]),
        ]
        seen = []

        def prefer_client(conflict: SyncConflict):
            seen.append(conflict.client_id)
            return "use_client"

        result = ReconciliationEngine(storage, api, conflict_policy=prefer_client).sync()

        assert seen == [task.client_id]
        assert result.success
        assert api.upload_sync.call_count == 2
        api.download_sync.assert_called_once()

    def test_policy_can_defer_to_user(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, None)])

        engine = ReconciliationEngine(storage, api, conflict_policy=lambda conflict: None)
        result = engine.sync()

        assert engine.state is SyncState.AWAITING_RESOLUTION
        assert len(result.conflicts) == 1

    def test_unrecognized_policy_answer_defers_to_user(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, None)])

        engine = ReconciliationEngine(storage, api, conflict_policy=lambda conflict: "keep both")
        result = engine.sync()

        assert engine.state is SyncState.AWAITING_RESOLUTION
        assert [c.client_id for c in result.conflicts] == [task.client_id]
        api.resolve_conflict.assert_not_called()
        assert engine.resolve_conflict(task.client_id, "use_client") is not None

    def test_policy_never_auto_resolves_processing_errors(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(
            conflicts=[_conflict(task.client_id, None, conflict_type="processing_error", error="title: required")]
        )

        engine = ReconciliationEngine(storage, api, conflict_policy=lambda conflict: "use_server")
        result = engine.sync()

        assert result.conflicts[0].error == "title: required"
        assert storage.get_task(task.client_id) is not None

    def test_policy_that_never_converges_aborts(self, storage, api):
        task = storage.add_task("mine")
        api.upload_sync.return_value = _upload_response(conflicts=[_conflict(task.client_id, None)])

        engine = ReconciliationEngine(storage, api, conflict_policy=lambda conflict: "use_server")
        result = engine.sync()

        assert result.errors
        assert engine.state is SyncState.IDLE
        api.download_sync.assert_not_called()


def test_sync_conflict_from_response():
    conflict = SyncConflict.from_response(
        {"client_id": "a", "conflict_type": "processing_error", "error": "bad", "error_category": "validation"}
    )
    assert conflict.server_task is None
    assert conflict.error_category == "validation"
