"""Main entry point for Job-Sync."""

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src import __version__
from src.config.settings import ContextRole, Settings
from src.sync.config import SyncConfig
from src.sync.errors import PersistenceExhausted
from src.sync.models import RecordKind, SyncRecord, SyncStatus
from src.utils.logging import configure_logging


def _json_object(value: str | None) -> dict[str, Any]:
    if value is None:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"--payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("--payload must be a JSON object")
    return parsed


def build_payload(parsed: argparse.Namespace) -> dict[str, Any]:
    """Assemble a record payload from the ``add`` arguments.

    Field names follow the tracker API (``jobTitle``, ``jobUrl``...);
    values from ``--payload`` win over the individual flags.

    Raises:
        ValueError: If ``--payload`` is not a JSON object.
    """
    now = datetime.now(UTC)
    payload: dict[str, Any] = {}
    if parsed.kind == RecordKind.APPLICATIONS:
        fields = {
            "company": parsed.company,
            "jobTitle": parsed.title,
            "jobUrl": parsed.url,
            "status": parsed.status,
            "location": parsed.location,
            "notes": parsed.notes,
        }
        payload.update({key: value for key, value in fields.items() if value})
        payload.setdefault("applicationDate", now.date().isoformat())
    payload["dateAdded"] = now.isoformat()
    payload.update(_json_object(parsed.payload))
    return payload


def _format_record(record: SyncRecord) -> str:
    payload = record.payload
    summary = " / ".join(
        str(payload[key])
        for key in ("company", "jobTitle", "name", "title")
        if payload.get(key)
    )
    line = f"{record.id}  {record.kind.value:<12} {record.sync_status.value:<8}"
    if summary:
        line += f"  {summary}"
    if record.last_error and record.sync_status == SyncStatus.FAILED:
        line += f"  ({record.last_error})"
    return line


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="job-sync",
        description="Job-Sync: offline-first sync for the job application tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m src add --company Acme --title "Backend Engineer"
  python -m src list --status unsynced
  python -m src sync
  python -m src run
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set the log level (overrides settings)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands",
    )

    add_parser = subparsers.add_parser(
        "add",
        help="Store a record locally and sync it if an endpoint is reachable",
    )
    add_parser.add_argument(
        "--kind",
        type=RecordKind,
        choices=list(RecordKind),
        default=RecordKind.APPLICATIONS,
        help="Record kind (applications/contacts/resumes)",
    )
    add_parser.add_argument("--company", type=str, default=None, help="Company name")
    add_parser.add_argument("--title", type=str, default=None, help="Job title")
    add_parser.add_argument("--url", type=str, default=None, help="Job posting URL")
    add_parser.add_argument(
        "--status",
        type=str,
        default="applied",
        help="Application status as tracked by the user",
    )
    add_parser.add_argument("--location", type=str, default=None, help="Location")
    add_parser.add_argument("--notes", type=str, default=None, help="Free-form notes")
    add_parser.add_argument(
        "--payload",
        type=str,
        default=None,
        help="Raw JSON object merged into the record payload",
    )

    list_parser = subparsers.add_parser("list", help="List locally stored records")
    list_parser.add_argument(
        "--kind",
        type=RecordKind,
        choices=list(RecordKind),
        default=None,
        help="Only list records of this kind",
    )
    list_parser.add_argument(
        "--status",
        type=SyncStatus,
        choices=list(SyncStatus),
        default=None,
        help="Only list records with this sync status",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Print records as JSON",
    )

    subparsers.add_parser(
        "status",
        help="Probe endpoints and show connectivity and pending counts",
    )
    subparsers.add_parser("sync", help="Run one reconciliation pass now")

    remove_parser = subparsers.add_parser("remove", help="Delete a record locally")
    remove_parser.add_argument("record_id", help="Local record id")

    subparsers.add_parser(
        "run",
        help="Run the background sync context until interrupted",
    )

    return parser


async def _open_service(config: SyncConfig, data_dir: Path):
    from src.sync.service import SyncService

    service = SyncService.from_config(config, data_dir=data_dir)
    await service.start(background=False)
    return service


async def _cmd_add(
    config: SyncConfig, settings: Settings, parsed: argparse.Namespace
) -> int:
    try:
        payload = build_payload(parsed)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    service = await _open_service(config, settings.data_dir)
    try:
        result = await service.engine.add_record(payload, kind=parsed.kind)
    finally:
        await service.stop()

    print(f"Stored: {result.record.id} (tier: {result.persisted_tier})")
    print(f"Sync status: {result.status.value}")
    if result.submit is not None and result.submit.error:
        print(f"Last error: {result.submit.error}")
    return 0


async def _cmd_list(
    config: SyncConfig, settings: Settings, parsed: argparse.Namespace
) -> int:
    service = await _open_service(config, settings.data_dir)
    try:
        records = await service.chain.read_all(parsed.kind)
    finally:
        await service.stop()

    if parsed.status is not None:
        records = [r for r in records if r.sync_status == parsed.status]
    records.sort(key=lambda r: r.created_at)

    if parsed.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return 0
    if not records:
        print("No records.")
        return 0
    for record in records:
        print(_format_record(record))
    return 0


async def _cmd_status(config: SyncConfig, settings: Settings) -> int:
    service = await _open_service(config, settings.data_dir)
    try:
        overview = await service.overview()
    finally:
        await service.stop()

    state = overview.connectivity
    if state.online:
        print(f"Connectivity: online ({state.endpoint.address})")
    else:
        print(f"Connectivity: {state.status.value}")
    for status in SyncStatus:
        print(f"{status.value}: {overview.counts.get(status, 0)}")
    print(f"pending: {overview.pending}")
    return 0


async def _cmd_sync(config: SyncConfig, settings: Settings) -> int:
    service = await _open_service(config, settings.data_dir)
    try:
        report = await service.engine.reconcile()
    finally:
        await service.stop()

    if report.offline and not report.results:
        print("Offline: no endpoint reachable, records stay queued.")
        return 1
    print(
        "Reconciled: "
        f"pending={report.pending} synced={report.synced} "
        f"failed={report.failed} skipped={report.skipped}"
    )
    return 1 if report.failed else 0


async def _cmd_remove(config: SyncConfig, settings: Settings, record_id: str) -> int:
    service = await _open_service(config, settings.data_dir)
    try:
        removed = await service.chain.remove(record_id)
    finally:
        await service.stop()

    if not removed:
        print(f"Error: record not found: {record_id}", file=sys.stderr)
        return 1
    print(f"Removed: {record_id}")
    return 0


async def _cmd_run(config: SyncConfig, settings: Settings) -> int:
    from src.sync.service import SyncService

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(Exception):
            loop.add_signal_handler(sig, stop_event.set)

    async with SyncService.from_config(config, data_dir=settings.data_dir):
        await stop_event.wait()
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the application.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no command specified, show help
    if parsed.command is None:
        parser.print_help()
        return 0

    # Load settings
    try:
        settings = Settings()
        config = SyncConfig()
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    context = (
        ContextRole.BACKGROUND if parsed.command == "run" else settings.context_role
    )
    log_level = parsed.log_level or settings.log_level
    logger = configure_logging(
        level=log_level, context=context.value, log_file=settings.log_file
    )
    logger.info(f"Job-Sync v{__version__} running '{parsed.command}'")

    try:
        if parsed.command == "add":
            return asyncio.run(_cmd_add(config, settings, parsed))
        if parsed.command == "list":
            return asyncio.run(_cmd_list(config, settings, parsed))
        if parsed.command == "status":
            return asyncio.run(_cmd_status(config, settings))
        if parsed.command == "sync":
            return asyncio.run(_cmd_sync(config, settings))
        if parsed.command == "remove":
            return asyncio.run(_cmd_remove(config, settings, parsed.record_id))
        if parsed.command == "run":
            return asyncio.run(_cmd_run(config, settings))
    except PersistenceExhausted as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
