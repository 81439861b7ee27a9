"""Operational CLI for the workflow engine.

	umpsa-workflow run-sweep [--kind KIND] [--now ISO-8601] [--dry-run]
	umpsa-workflow purge-resolved [--days N] [--batch N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Optional, Sequence

import asyncpg

from umpsa.infra import postgres
from umpsa.maintenance.retention import purge_resolved_reports
from umpsa.obs import logging as obs_logging
from umpsa.settings import settings
from umpsa.workflow.domain.clock import ensure_utc
from umpsa.workflow.domain.container import configure_postgres, get_sweeper
from umpsa.workflow.domain.errors import StoreUnavailable
from umpsa.workflow.domain.models import EntityKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STORE_UNAVAILABLE = 2
EXIT_NO_DURABLE_STORE = 3

_CONNECTIVITY_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.PostgresError, StoreUnavailable)


def _parse_now(value: str) -> datetime:
	text = value.strip()
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	try:
		parsed = datetime.fromisoformat(text)
	except ValueError as exc:
		raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value}") from exc
	return ensure_utc(parsed)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="umpsa-workflow", description="Workflow engine operations")
	commands = parser.add_subparsers(dest="command", required=True)

	sweep = commands.add_parser("run-sweep", help="Expire stale requests and publish/expire announcements")
	sweep.add_argument(
		"--kind",
		choices=[kind.value for kind in EntityKind],
		help="Restrict the sweep to one entity kind (default: all)",
	)
	sweep.add_argument("--now", type=_parse_now, help="Sweep as of this instant instead of the current time")
	sweep.add_argument("--dry-run", action="store_true", help="Report what would transition without writing")

	purge = commands.add_parser("purge-resolved", help="Delete resolved reports past the retention window")
	purge.add_argument("--days", type=int, default=None, help="Retention in days (default: REPORT_RETENTION_DAYS)")
	purge.add_argument("--batch", type=int, default=1000, help="Maximum rows deleted per run")
	return parser


def _emit_failure(command: str, exc: BaseException) -> int:
	logger.error("store unavailable", extra={"event": "cli_store_unavailable", "command": command, "error": str(exc)})
	print(json.dumps({"command": command, "error": "store_unavailable"}), file=sys.stderr)
	return EXIT_STORE_UNAVAILABLE


async def run_sweep(kind: Optional[str], now: Optional[datetime], dry_run: bool) -> int:
	# an in-process store is empty in a fresh CLI process
	if settings.workflow_store != "postgres":
		logger.error(
			"run-sweep needs the postgres store",
			extra={"event": "cli_no_durable_store", "store": settings.workflow_store},
		)
		print(json.dumps({"command": "run-sweep", "error": "durable_store_required"}), file=sys.stderr)
		return EXIT_NO_DURABLE_STORE
	try:
		configure_postgres(await postgres.init_pool())
		kinds = [EntityKind(kind)] if kind else None
		report = await get_sweeper().sweep(kinds, now=now, dry_run=dry_run)
	except _CONNECTIVITY_ERRORS as exc:
		return _emit_failure("run-sweep", exc)
	finally:
		await postgres.close_pool()
	print(json.dumps(report.as_dict(), indent=2))
	return EXIT_OK if report.ok else EXIT_STORE_UNAVAILABLE


async def purge_resolved(days: Optional[int], batch: int) -> int:
	try:
		counts = await purge_resolved_reports(days, batch)
	except _CONNECTIVITY_ERRORS as exc:
		return _emit_failure("purge-resolved", exc)
	finally:
		await postgres.close_pool()
	print(json.dumps({"deleted": counts}, indent=2))
	return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
	args = build_parser().parse_args(argv)
	obs_logging.configure_logging()
	if args.command == "run-sweep":
		return asyncio.run(run_sweep(args.kind, args.now, args.dry_run))
	return asyncio.run(purge_resolved(args.days, args.batch))


if __name__ == "__main__":
	raise SystemExit(main())
