"""Command-line entry point.

Usage::

    taskpulse serve
    taskpulse preview task.json
    echo '{"type": "command", "config": {"command": "echo hi"}}' | taskpulse preview -
    taskpulse next task.json --count 5
    taskpulse logs --task 42 --status failed
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from taskpulse.runtime.config.settings import cfg
from taskpulse.runtime.errors import PersistenceError, TaskExecutionError
from taskpulse.runtime.scheduler import TaskScheduler, get_scheduler, set_scheduler, upcoming
from taskpulse.runtime.state import ExecutionLogStore, JsonTaskRepository, Task

logger = logging.getLogger(__name__)
console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskpulse",
        description="Schedule and run HTTP, command and script tasks.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("serve", help="Arm every active task and run until interrupted.")

    preview = sub.add_parser("preview", help="Run a task's logic once without logging or retries.")
    preview.add_argument("task", help="Task JSON: a file path, inline JSON, or '-' for stdin.")

    nxt = sub.add_parser("next", help="Print the upcoming fire times of a task's trigger.")
    nxt.add_argument("task", help="Task JSON: a file path, inline JSON, or '-' for stdin.")
    nxt.add_argument(
        "-n", "--count",
        type=int,
        default=5,
        help="How many fire times to print (default: 5).",
    )

    logs = sub.add_parser("logs", help="List recorded execution attempts.")
    logs.add_argument("--task", default="", help="Only attempts of this task id.")
    logs.add_argument(
        "--status",
        default="",
        choices=["", "running", "success", "failed"],
        help="Only attempts in this state.",
    )
    logs.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20).")
    return parser


def _load_task(source: str) -> Task:
    """Build a :class:`Task` from a file path, inline JSON or stdin."""
    if source == "-":
        text = sys.stdin.read()
    elif source.lstrip().startswith(("{", "[")):
        text = source
    else:
        try:
            text = Path(source).read_text()
        except OSError as exc:
            console.print(f"[red]Error:[/red] cannot read task file: {escape(str(exc))}")
            sys.exit(1)
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        console.print(f"[red]Error:[/red] task is not valid JSON: {escape(str(exc))}")
        sys.exit(1)
    if not isinstance(raw, dict):
        console.print("[red]Error:[/red] task JSON must be an object.")
        sys.exit(1)
    raw.setdefault("id", "preview")
    return Task.from_dict(raw)


def _print_result(result: Any) -> None:
    if isinstance(result, (dict, list)):
        console.print_json(data=result, default=str)
    else:
        console.print(escape(str(result)))


async def _serve(args: argparse.Namespace) -> int:
    cfg.ensure_dirs()
    scheduler = TaskScheduler(JsonTaskRepository())
    set_scheduler(scheduler)

    try:
        armed = await scheduler.initialize()
    except PersistenceError as exc:
        logger.error("[cli] cannot start: %s", exc)
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        return 1

    console.print(
        f"[bold green]taskpulse[/bold green] serving {armed} task(s) "
        f"[dim](timezone {cfg.timezone_name}, data {cfg.data_dir})[/dim]"
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("[cli] cannot install handler for %s", sig)
    try:
        await stop.wait()
    finally:
        await scheduler.shutdown()
        console.print("[dim]Stopped.[/dim]")
    return 0


async def _preview(args: argparse.Namespace) -> int:
    task = _load_task(args.task)
    try:
        result = await get_scheduler().execute_task_logic(task)
    except TaskExecutionError as exc:
        console.print(f"[red]Failed:[/red] {escape(str(exc))}")
        return 1
    console.print(f"[green]OK[/green] {task.type} task {task.id}")
    _print_result(result)
    return 0


def _next(args: argparse.Namespace) -> int:
    task = _load_task(args.task)
    tz = cfg.timezone
    now = datetime.now(tz)
    times = upcoming(task, max(args.count, 1), now=now, tz=tz)
    if not times:
        nxt = get_scheduler().preview_next_fire(task, now)
        reason = nxt.reason.value if nxt.reason else "unknown"
        console.print(f"[yellow]No upcoming fire[/yellow] ({reason}) {escape(nxt.detail)}")
        return 1

    table = Table(title=f"{task.trigger_type} trigger ({cfg.timezone_name})")
    table.add_column("#", justify="right")
    table.add_column("Fire time")
    table.add_column("In")
    for i, at in enumerate(times, 1):
        table.add_row(str(i), at.isoformat(), str(at - now).split(".")[0])
    console.print(table)
    return 0


def _logs(args: argparse.Namespace) -> int:
    page = ExecutionLogStore().query(task_id=args.task, status=args.status, limit=args.limit)
    table = Table(title=f"Execution logs ({page['total']} total)")
    for col in ("Started", "Task", "Status", "Retry", "Duration", "Error"):
        table.add_column(col)
    colours = {"success": "green", "failed": "red", "running": "yellow"}
    for e in page["entries"]:
        colour = colours.get(e["status"], "white")
        table.add_row(
            e["startedAt"] or "",
            escape(e["taskId"]),
            f"[{colour}]{e['status']}[/{colour}]",
            str(e["retryCount"]),
            f"{e['duration']} ms" if e["duration"] is not None else "",
            escape((e["error"] or "")[:80]),
        )
    console.print(table)
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``taskpulse``."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s  %(name)s  %(levelname)s  %(message)s",
    )

    try:
        if args.command == "serve":
            code = asyncio.run(_serve(args))
        elif args.command == "preview":
            code = asyncio.run(_preview(args))
        elif args.command == "next":
            code = _next(args)
        else:
            code = _logs(args)
    except KeyboardInterrupt:
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
