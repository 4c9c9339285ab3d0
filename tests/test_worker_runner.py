"""Tests for the worker runner loop and CLI wiring."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import FakeRegistry
from core.alerts import RpaAlertDispatcher
from core.config import WorkerSettings
from core.reply_classifier import AnthropicReplyClassifier
from execution.queue_store import SQLiteQueueStore
from execution.worker_runner import WorkerRunner, apply_args, build_pipeline, parse_args


def recent(minutes=1):
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


def make_runner(db_path, registry, ingest=False, store=None):
    settings = WorkerSettings(worker_id="worker-test", poll_interval_ms=0)
    return WorkerRunner(
        settings,
        store=store or SQLiteQueueStore(db_path, registry=registry),
        registry=registry,
        alerts=RpaAlertDispatcher(env={}, console_output=False),
        ingest=ingest,
    )


def read_events(path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


# ============================================================================
# CLI
# ============================================================================

def test_parse_and_apply_args():
    args = parse_args(["--once", "--batch-size", "0", "--interval-ms", "-5", "--db", "data/bot.db", "--ingest"])
    settings = apply_args(WorkerSettings(worker_id="w"), args)

    assert args.ingest is True
    assert settings.run_once is True
    assert settings.batch_size == 1
    assert settings.poll_interval_ms == 0
    assert settings.db_path == Path("data/bot.db")


def test_apply_args_keeps_settings_without_flags():
    settings = apply_args(WorkerSettings(worker_id="w", batch_size=7), parse_args([]))
    assert settings.batch_size == 7
    assert settings.run_once is False


def test_build_pipeline_selects_classifier():
    assert build_pipeline(WorkerSettings(worker_id="w")).classifier is None
    assert build_pipeline(WorkerSettings(worker_id="w", decision_provider="anthropic")).classifier is None

    pipeline = build_pipeline(WorkerSettings(
        worker_id="w",
        decision_provider="anthropic",
        anthropic_api_key="sk-test",
        playbook="Be brief.",
    ))
    assert isinstance(pipeline.classifier, AnthropicReplyClassifier)
    assert pipeline.playbook == "Be brief."


# ============================================================================
# CYCLES
# ============================================================================

@pytest.mark.asyncio
async def test_cycle_ingests_then_triages(db_path, isolated_events_file):
    inbox = {"acct-1": [{
        "external_thread_id": "thread-1",
        "external_message_id": "sr-1",
        "body": "What is the rent?",
        "lead_name": "Robin",
        "sent_at": recent(),
    }]}
    registry = FakeRegistry(inbox=inbox)
    runner = make_runner(db_path, registry, ingest=True)
    await runner.store.upsert_platform_account("spareroom", account_id="acct-1", credentials={})

    result = await runner.run_cycle()

    assert result.scanned == 1
    assert result.outcomes[0].status == "escalated"
    assert result.outcomes[0].reason == "escalate_non_tour_intent"
    events = read_events(isolated_events_file)
    assert events[-1]["event_type"] == "worker_cycle_completed"
    assert events[-1]["payload"]["worker_id"] == "worker-test"
    assert events[-1]["payload"]["scanned"] == 1


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(db_path):
    runner = make_runner(db_path, FakeRegistry())
    runner._running = True
    assert await runner.run_cycle() is None


@pytest.mark.asyncio
async def test_run_once_closes_registry(db_path):
    registry = FakeRegistry()
    runner = make_runner(db_path, registry)

    await runner.run(once=True)

    assert registry.closed is True


@pytest.mark.asyncio
async def test_run_once_propagates_cycle_failure(db_path, isolated_events_file):
    class BrokenStore(SQLiteQueueStore):
        async def fetch_pending_messages(self, *args, **kwargs):
            raise RuntimeError("disk I/O error")

    registry = FakeRegistry()
    runner = make_runner(db_path, registry, store=BrokenStore(db_path, registry=registry))

    with pytest.raises(RuntimeError):
        await runner.run(once=True)

    assert registry.closed is True
    assert read_events(isolated_events_file)[-1]["event_type"] == "system_error"


@pytest.mark.asyncio
async def test_stop_ends_the_loop(db_path):
    registry = FakeRegistry()
    runner = make_runner(db_path, registry)
    runner.stop()

    await asyncio.wait_for(runner.run(), timeout=5)

    assert registry.closed is True


@pytest.mark.asyncio
async def test_reliability_events_are_recorded(db_path, isolated_events_file):
    runner = make_runner(db_path, FakeRegistry())

    runner.on_reliability_event({"type": "rpa_circuit_opened", "platform": "spareroom", "account_id": "acct-1"})
    await asyncio.gather(*runner._alert_tasks)

    events = read_events(isolated_events_file)
    assert events[0]["event_type"] == "rpa_circuit_opened"
    assert events[0]["payload"]["platform"] == "spareroom"
