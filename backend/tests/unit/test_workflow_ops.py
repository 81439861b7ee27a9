import json
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from umpsa.maintenance import retention
from umpsa.obs.logging import JSONLogFormatter, bind_context, reset_context
from umpsa.settings import settings
from umpsa.workflow import cli
from umpsa.workflow.domain import container
from umpsa.workflow.domain.errors import StoreUnavailable
from umpsa.workflow.domain.events import RedisEventPublisher, publish_safely
from umpsa.workflow.domain.models import PostRequestStatus
from umpsa.workflow.workers import retention_worker, runner
from umpsa.workflow.workers.retention_worker import RetentionWorker
from umpsa.workflow.workers.sweeper_worker import SweepWorker

from conftest import T0


def _pool_with_conn(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


@pytest.mark.asyncio
async def test_purge_resolved_reports(monkeypatch):
    conn = AsyncMock()
    conn.fetch.return_value = [(1,), (1,), (1,)]
    monkeypatch.setattr(retention, "get_pool", AsyncMock(return_value=_pool_with_conn(conn)))

    counts = await retention.purge_resolved_reports(days=7, batch=50, now=T0)
    assert counts == {"workflow_records": 3}
    query, cutoff, limit = conn.fetch.await_args.args
    assert "status = 'resolved'" in query
    assert cutoff == T0 - timedelta(days=7)
    assert limit == 50


def test_cli_parses_now_with_zulu_suffix():
    args = cli.build_parser().parse_args(["run-sweep", "--kind", "announcement", "--now", "2025-03-04T09:00:01Z"])
    assert args.now == T0 + timedelta(days=1, seconds=1)
    assert args.kind == "announcement"
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["run-sweep", "--now", "yesterday"])


@pytest.mark.asyncio
async def test_cli_run_sweep_prints_summary(capsys, monkeypatch):
    monkeypatch.setattr(settings, "workflow_store", "postgres")
    monkeypatch.setattr(cli, "configure_postgres", lambda pool: None)
    service = container.get_service()
    request = await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")

    code = await cli.run_sweep("public_post_request", cli._parse_now("2025-03-11T09:00:01+00:00"), False)
    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["transitioned_count"] == 1
    assert summary["transitioned"][0]["record_id"] == request.id
    assert (await service.get(request.id)).status is PostRequestStatus.EXPIRED


def test_cli_exit_code_on_store_outage(monkeypatch, capsys):
    sweeper = MagicMock()
    sweeper.sweep = AsyncMock(side_effect=StoreUnavailable())
    monkeypatch.setattr(settings, "workflow_store", "postgres")
    monkeypatch.setattr(cli, "configure_postgres", lambda pool: None)
    monkeypatch.setattr(cli, "get_sweeper", lambda: sweeper)
    monkeypatch.setattr(cli.obs_logging, "configure_logging", lambda: None)

    assert cli.main(["run-sweep", "--dry-run"]) == 2
    assert "store_unavailable" in capsys.readouterr().err


def test_cli_sweep_refuses_in_process_store(monkeypatch, capsys):
    sweeper = MagicMock()
    sweeper.sweep = AsyncMock()
    monkeypatch.setattr(cli, "get_sweeper", lambda: sweeper)
    monkeypatch.setattr(cli.obs_logging, "configure_logging", lambda: None)

    assert cli.main(["run-sweep"]) == cli.EXIT_NO_DURABLE_STORE
    assert "durable_store_required" in capsys.readouterr().err
    sweeper.sweep.assert_not_awaited()


def test_cli_purge_resolved(monkeypatch, capsys):
    purge = AsyncMock(return_value={"workflow_records": 2})
    monkeypatch.setattr(cli, "purge_resolved_reports", purge)
    monkeypatch.setattr(cli.obs_logging, "configure_logging", lambda: None)

    assert cli.main(["purge-resolved", "--days", "30", "--batch", "10"]) == 0
    purge.assert_awaited_once_with(30, 10)
    assert json.loads(capsys.readouterr().out) == {"deleted": {"workflow_records": 2}}


@pytest.mark.asyncio
async def test_redis_publisher_appends_to_stream(fake_redis):
    publisher = RedisEventPublisher(fake_redis, "workflow:test")
    assert await publish_safely(publisher, {"type": "workflow.transition", "record_id": "r1"})
    entries = await fake_redis.xrange("workflow:test")
    assert entries[0][1] == {"type": "workflow.transition", "record_id": "r1"}
    assert not await publish_safely(None, {"record_id": "r1"})


@pytest.mark.asyncio
async def test_sweep_worker_runs_with_injected_clock(service, sweeper, clock):
    request = await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")
    clock.advance(timedelta(days=7, seconds=1))
    report = await SweepWorker(sweeper).run_once()
    assert [o.record_id for o in report.transitioned] == [request.id]


@pytest.mark.asyncio
async def test_retention_worker_purges_with_configured_window(monkeypatch):
    purge = AsyncMock(return_value={"workflow_records": 4})
    monkeypatch.setattr(retention_worker, "purge_resolved_reports", purge)
    assert await RetentionWorker(days=14, batch=200).run_once() == {"workflow_records": 4}
    purge.assert_awaited_once_with(14, 200)


def test_backoff_is_capped():
    assert runner.next_delay(60, 0) == 60
    assert runner.next_delay(60, 1) == 120
    assert runner.next_delay(60, 10) == runner.MAX_BACKOFF_SECONDS


def test_json_log_formatter_redacts_and_binds_request_id():
    tokens = bind_context(request_id="req-42")
    try:
        record = logging.LogRecord("umpsa.workflow", logging.INFO, __file__, 1, "transition", None, None)
        record.record_id = "r1"
        record.admin_token = "hunter2"
        payload = json.loads(JSONLogFormatter().format(record))
    finally:
        reset_context(tokens)
    assert payload["request_id"] == "req-42"
    assert payload["record_id"] == "r1"
    assert payload["admin_token"] == "[redacted]"
    assert payload["level"] == "info"
