from __future__ import annotations

import argparse
from typing import Sequence

import uvicorn

from nas_webapp.db import build_engine, init_db
from nas_webapp.models import TASK_STATUSES
from nas_webapp.settings import Settings
from nas_webapp.task_store import TaskStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m nas_webapp")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the NAS control panel server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8787)

    tasks = subparsers.add_parser("tasks", help="Print recent lifecycle tasks")
    tasks.add_argument("--status", choices=sorted(TASK_STATUSES))
    tasks.add_argument("--limit", type=int, default=20)
    return parser


def print_tasks(*, status: str | None, limit: int) -> int:
    settings = Settings()
    engine = build_engine(settings.nas_db_path, db_url=settings.nas_db_url)
    init_db(engine)
    store = TaskStore(engine=engine)
    rows = store.list(limit=limit, status=status)
    if not rows:
        print("no tasks")
        return 0
    print(f"{'ID':>6}  {'APP':<24} {'ACTION':<15} {'STATUS':<10} {'PROGRESS':>8}  MESSAGE")
    for task in rows:
        print(
            f"{task.id:>6}  {task.app_id:<24} {task.action:<15} {task.status:<10} "
            f"{task.progress:>7}%  {task.error_detail or task.message}"
        )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if args.command == "serve":
        uvicorn.run("nas_webapp.app:create_app", factory=True, host=args.host, port=args.port)
        return 0
    if args.command == "tasks":
        return print_tasks(status=args.status, limit=args.limit)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
