#!/usr/bin/env python3
"""
Worker Runner - Polls the queue and triages pending lead messages.
==================================================================
Each cycle optionally ingests new inbox messages through the connector
registry, then runs one decision batch. Cycles never overlap; SIGINT or
SIGTERM finishes the current cycle and exits.

Usage:
    python execution/worker_runner.py
    python execution/worker_runner.py --once
    python execution/worker_runner.py --ingest --batch-size 10 --interval-ms 30000
    python execution/worker_runner.py --db .hive-mind/leasebot.db
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.table import Table

from core.alerts import RpaAlertDispatcher
from core.config import WorkerSettings, load_reliability_policy, load_worker_settings
from core.event_log import EventType, log_event, record_reliability_event
from core.reply_classifier import DEFAULT_MODEL, AnthropicReplyClassifier
from core.reply_pipeline import ReplyPipeline
from execution.connector_registry import ConnectorRegistry
from execution.decision_worker import BatchResult, process_pending_messages_with_ai
from execution.queue_store import SQLiteQueueStore
from execution.rpa_runner import create_rpa_runner

console = Console()
logger = logging.getLogger("worker_runner")


def build_pipeline(settings: WorkerSettings) -> ReplyPipeline:
    """Heuristic pipeline, with the Anthropic classifier when configured."""
    classifier = None
    if settings.decision_provider == "anthropic":
        if settings.anthropic_api_key:
            classifier = AnthropicReplyClassifier(
                api_key=settings.anthropic_api_key,
                model=settings.anthropic_model or DEFAULT_MODEL,
            )
        else:
            logger.warning("AI_DECISION_PROVIDER=anthropic but ANTHROPIC_API_KEY is empty; using heuristic")
    return ReplyPipeline(classifier=classifier, playbook=settings.playbook)


def print_cycle_summary(result: BatchResult, ingest: Optional[Dict[str, Any]] = None) -> None:
    metrics = result.metrics
    table = Table(title="Worker Cycle")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    if ingest is not None:
        table.add_row("Ingested (new / scanned)", f"{ingest['ingested']} / {ingest['scanned']}")
        if ingest.get("failures"):
            table.add_row("Ingest failures", str(len(ingest["failures"])), style="red")
    table.add_row("Scanned", str(result.scanned))
    table.add_row("Replies created", str(result.replies_created))
    table.add_row("Eligible / ineligible", f"{metrics.decisions_eligible} / {metrics.decisions_ineligible}")
    table.add_row("Sent / drafted", f"{metrics.sends_sent} / {metrics.sends_drafted}")
    table.add_row("Escalations", str(metrics.escalations_raised))
    table.add_row("Duplicates suppressed", str(metrics.duplicates_suppressed))
    table.add_row("DLQ queued", str(metrics.dlq_queued))
    table.add_row("Errors", str(metrics.errors))
    for platform, count in sorted(metrics.platform_failures.items()):
        table.add_row(f"Platform failures: {platform}", f"[red]{count}[/red]")

    console.print(table)


class WorkerRunner:
    """Owns the store, registry and pipeline for one worker process."""

    def __init__(
        self,
        settings: WorkerSettings,
        store: Optional[SQLiteQueueStore] = None,
        registry: Optional[ConnectorRegistry] = None,
        pipeline: Optional[ReplyPipeline] = None,
        alerts: Optional[RpaAlertDispatcher] = None,
        ingest: bool = False,
    ):
        self.settings = settings
        self.ingest = ingest
        self.alerts = alerts or RpaAlertDispatcher(source="worker")
        self._alert_tasks: Set[asyncio.Task] = set()
        self.registry = registry or ConnectorRegistry(
            runner=create_rpa_runner(runtime_mode=settings.rpa_runtime, app_env=settings.app_env),
            reliability=load_reliability_policy(settings.reliability_policy_path),
            ingest_p95_target_ms=settings.ingest_p95_target_ms,
            on_event=self.on_reliability_event,
        )
        self.store = store or SQLiteQueueStore(
            settings.db_path,
            registry=self.registry,
            default_send_mode=settings.default_send_mode,
        )
        self.pipeline = pipeline or build_pipeline(settings)
        self._running = False
        self._stop = asyncio.Event()

    def on_reliability_event(self, event: Dict[str, Any]) -> None:
        record_reliability_event(event)
        task = asyncio.get_running_loop().create_task(self.alerts.handle_event(event))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested; finishing current cycle")
        self._stop.set()

    async def run_cycle(self) -> Optional[BatchResult]:
        """One ingest + triage pass. Returns None when a cycle is already running."""
        if self._running:
            logger.warning("Previous worker cycle still running; skipping")
            return None

        self._running = True
        try:
            ingest_result = None
            if self.ingest:
                ingest_result = await self.store.ingest_inbound_messages(limit=self.settings.batch_size)

            result = await process_pending_messages_with_ai(
                self.store,
                pipeline=self.pipeline,
                settings=self.settings,
            )
            log_event(EventType.WORKER_CYCLE_COMPLETED, {
                "worker_id": self.settings.worker_id,
                "scanned": result.scanned,
                "replies_created": result.replies_created,
                "metrics": result.metrics.to_dict(),
            })
            print_cycle_summary(result, ingest_result)
            return result
        finally:
            self._running = False

    async def run(self, once: bool = False) -> None:
        console.print(f"[bold blue]LEASE BOT WORKER: Starting ({self.settings.worker_id})[/bold blue]")
        interval = self.settings.poll_interval_ms / 1000

        try:
            while not self._stop.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.exception("Worker cycle failed: %s", e)
                    log_event(EventType.SYSTEM_ERROR, {"worker_id": self.settings.worker_id, "error": str(e)})
                    if once:
                        raise

                if once:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._alert_tasks:
                await asyncio.gather(*self._alert_tasks, return_exceptions=True)
            await self.registry.close()
            console.print("[yellow]Worker stopped[/yellow]")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Triage pending lead messages")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--batch-size", type=int, help="Messages claimed per cycle")
    parser.add_argument("--interval-ms", type=int, help="Delay between cycles in milliseconds")
    parser.add_argument("--ingest", action="store_true", help="Run connector ingest before triage")
    parser.add_argument("--db", type=Path, help="SQLite database path")
    return parser.parse_args(argv)


def apply_args(settings: WorkerSettings, args: argparse.Namespace) -> WorkerSettings:
    if args.batch_size is not None:
        settings.batch_size = max(1, args.batch_size)
    if args.interval_ms is not None:
        settings.poll_interval_ms = max(0, args.interval_ms)
    if args.db is not None:
        settings.db_path = args.db
    if args.once:
        settings.run_once = True
    return settings


async def _main(settings: WorkerSettings, ingest: bool) -> None:
    runner = WorkerRunner(settings, ingest=ingest)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await runner.run(once=settings.run_once)


def main(argv=None):
    args = parse_args(argv)
    settings = apply_args(load_worker_settings(), args)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        asyncio.run(_main(settings, ingest=args.ingest))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")
    except Exception as e:
        console.print(f"[red]Worker error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
