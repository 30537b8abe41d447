"""todosync CLI - local task list with offline-first sync.

Usage:
    python -m todosync.cli add "Buy milk" --priority high
    python -m todosync.cli list
    python -m todosync.cli sync
"""

import argparse
import logging
import sys
from typing import Optional

from todosync.client import ApiClient
from todosync.config import Credentials, get_todosync_home, load_credentials, save_credentials, validate_backend_url
from todosync.errors import TodoSyncClientError
from todosync.logging_config import setup_todosync_logging
from todosync.models import CATEGORIES, PRIORITIES, parse_datetime
from todosync.storage import LocalStorage
from todosync.sync_engine import RESOLUTIONS, ReconciliationEngine, SyncConflict, SyncResult

logger = logging.getLogger(__name__)


def _storage() -> LocalStorage:
    return LocalStorage(get_todosync_home() / "todos.db")


def _api_client(creds: Credentials) -> ApiClient:
    if not creds.backend_url:
        print("✗ Backend URL not configured")
        print("  Run `todosync login` or set TODOSYNC_BACKEND_URL")
        sys.exit(1)
    if not creds.auth_token:
        print("✗ Not authenticated")
        print("  Run `todosync login` or set TODOSYNC_AUTH_TOKEN")
        sys.exit(1)
    return ApiClient(creds.backend_url, token=creds.auth_token)


def _find(storage: LocalStorage, prefix: str):
    """Resolve a task by client_id prefix."""
    matches = [t for t in storage.list_tasks() if t.client_id.startswith(prefix)]
    if len(matches) != 1:
        raise ValueError(f"{'No' if not matches else 'Ambiguous'} task matching '{prefix}'")
    return matches[0]


# === Local commands ===


def cmd_add(args, storage: LocalStorage):
    task = storage.add_task(
        args.title,
        description=args.description,
        priority=args.priority,
        category=args.category,
        due_date=parse_datetime(args.due) if args.due else None,
        tags=args.tag or [],
    )
    print(f"✓ Added {task.client_id[:8]}  {task.title}")


def cmd_list(args, storage: LocalStorage):
    tasks = storage.list_tasks(include_deleted=args.all)
    if not tasks:
        print("No tasks.")
        return
    for task in tasks:
        mark = "x" if task.completed else " "
        synced = "" if task.server_id else " (local)"
        deleted = " [deleted]" if task.is_deleted else ""
        print(f"[{mark}] {task.client_id[:8]}  {task.title}  ({task.priority}/{task.category}){synced}{deleted}")


def cmd_done(args, storage: LocalStorage):
    task = _find(storage, args.id)
    storage.update_task(task.client_id, completed=not args.undo)
    print(f"✓ {task.title}: {'pending' if args.undo else 'done'}")


def cmd_delete(args, storage: LocalStorage):
    task = _find(storage, args.id)
    storage.delete_task(task.client_id)
    print(f"✓ Deleted {task.title}")


# === Backend commands ===


def cmd_login(args, storage: LocalStorage):
    backend_url = validate_backend_url(args.backend_url)
    if not backend_url:
        print("✗ Backend URL must use https (http is allowed only for localhost)")
        sys.exit(1)
    with ApiClient(backend_url) as client:
        if args.register:
            result = client.register(args.email, args.password, args.name or args.email.split("@")[0])
        else:
            result = client.login(args.email, args.password)
    path = save_credentials(
        Credentials(backend_url=backend_url, auth_token=result["token"], user_email=args.email)
    )
    print(f"✓ {result['message']}; credentials saved to {path}")


def _ask(conflict: SyncConflict) -> Optional[str]:
    server = conflict.server_task or {}
    client = conflict.client_task if isinstance(conflict.client_task, dict) else {}
    print(f"\nConflict on {conflict.client_id} ({conflict.conflict_type})")
    if conflict.error:
        print(f"  error:  {conflict.error}")
    print(f"  server: {server.get('title', '<deleted>')}")
    print(f"  local:  {client.get('title')}")
    answer = input("  keep [s]erver / [c]lient / [l]ater? ").strip().lower()
    return {"s": "use_server", "c": "use_client"}.get(answer[:1])


def _print_result(result: SyncResult):
    if result.errors:
        for error in result.errors:
            print(f"✗ {error}")
        return
    if result.conflicts:
        print(f"⚠ {len(result.conflicts)} conflict(s) need resolution; nothing downloaded")
        return
    print(f"✓ Synced: uploaded={result.uploaded} created={result.created} downloaded={result.downloaded}")


def cmd_sync(args, storage: LocalStorage):
    creds = load_credentials()
    with _api_client(creds) as client:
        policy = None
        if args.prefer:
            preferred = f"use_{args.prefer}"
            policy = lambda conflict: preferred  # noqa: E731
        engine = ReconciliationEngine(storage, client, conflict_policy=policy)
        result = engine.sync()

        while result is not None and result.conflicts and sys.stdin.isatty():
            for conflict in list(engine.pending_conflicts):
                decision = _ask(conflict)
                if decision is None:
                    _print_result(result)
                    return
                result = engine.resolve_conflict(conflict.client_id, decision) or result
        _print_result(result)


def cmd_status(args, storage: LocalStorage):
    last_sync = storage.get_last_sync()
    local = storage.all_tasks()
    unsynced = sum(1 for t in local if t.server_id is None)
    print(f"Local tasks: {len(local)} ({unsynced} never synced)")
    print(f"Last sync:   {last_sync.isoformat() if last_sync else 'never'}")

    creds = load_credentials()
    if not creds.backend_url or not creds.auth_token:
        print("Backend:     not configured")
        return
    with ApiClient(creds.backend_url, token=creds.auth_token) as client:
        try:
            status = client.get_status()
        except TodoSyncClientError as e:
            print(f"Backend:     unreachable ({e})")
            return
    print(f"Backend:     {creds.backend_url} ({status['todo_count']} tasks, last upload {status['last_sync']})")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="todosync", description="Offline-first todo list")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG also logs to console)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_add = subparsers.add_parser("add", help="Add a task")
    p_add.add_argument("title")
    p_add.add_argument("--description", "-d")
    p_add.add_argument("--priority", "-p", choices=PRIORITIES, default="medium")
    p_add.add_argument("--category", "-c", choices=CATEGORIES, default="personal")
    p_add.add_argument("--due", help="Due date (ISO-8601)")
    p_add.add_argument("--tag", "-t", action="append", help="Tag (repeatable)")

    p_list = subparsers.add_parser("list", help="List tasks")
    p_list.add_argument("--all", action="store_true", help="Include deleted tasks")

    p_done = subparsers.add_parser("done", help="Mark a task completed")
    p_done.add_argument("id", help="client_id or unique prefix")
    p_done.add_argument("--undo", action="store_true", help="Mark as pending again")

    p_delete = subparsers.add_parser("delete", help="Delete a task")
    p_delete.add_argument("id", help="client_id or unique prefix")

    p_login = subparsers.add_parser("login", help="Log in (or register) and save credentials")
    p_login.add_argument("--backend-url", required=True)
    p_login.add_argument("--email", required=True)
    p_login.add_argument("--password", required=True)
    p_login.add_argument("--register", action="store_true", help="Create the account first")
    p_login.add_argument("--name", help="Display name when registering")

    p_sync = subparsers.add_parser("sync", help="Sync with the backend")
    p_sync.add_argument(
        "--prefer",
        choices=[r.split("_", 1)[1] for r in RESOLUTIONS],
        help="Resolve every conflict automatically in favor of server or client",
    )

    subparsers.add_parser("status", help="Show sync status")

    args = parser.parse_args(argv)
    setup_todosync_logging(args.log_level)

    commands = {
        "add": cmd_add,
        "list": cmd_list,
        "done": cmd_done,
        "delete": cmd_delete,
        "login": cmd_login,
        "sync": cmd_sync,
        "status": cmd_status,
    }
    try:
        commands[args.command](args, _storage())
    except ValueError as e:
        print(f"✗ {e}")
        sys.exit(1)
    except TodoSyncClientError as e:
        logger.error(f"Command failed: {e}")
        print(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
