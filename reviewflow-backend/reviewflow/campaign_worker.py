"""Background runner for due campaign steps.

Runs the same pass as ``POST /campaigns/executions/run-due`` across every
business. Start it standalone with ``reviewflow-campaign-worker`` or inside
the API process with ``CAMPAIGN_WORKER_ENABLED=true``.
"""

import argparse
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from reviewflow.core.config import settings
from reviewflow.core.observability import log_event, setup_observability
from reviewflow.db.session import SessionLocal, session_scope
from reviewflow.services.campaign_engine import ExecutionRunSummary, run_due_executions

logger = logging.getLogger("reviewflow.worker")


def run_campaign_pass(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> ExecutionRunSummary:
    with session_scope(session_factory) as db:
        return run_due_executions(db, now=now, limit=limit)


def run_forever(
    stop_event: threading.Event,
    *,
    interval_seconds: float | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    """Runs passes until ``stop_event`` is set; returns how many passes ran."""
    interval = interval_seconds or settings.campaign_run_interval_seconds
    passes = 0
    while not stop_event.is_set():
        try:
            run_campaign_pass(session_factory)
        except Exception as exc:
            # Logged and retried on the next tick.
            log_event(logger, "worker.pass_failed", level=logging.ERROR, error=str(exc))
        passes += 1
        stop_event.wait(interval)
    return passes


def start_in_thread(stop_event: threading.Event, *, interval_seconds: float | None = None) -> threading.Thread:
    thread = threading.Thread(
        target=run_forever,
        args=(stop_event,),
        kwargs={"interval_seconds": interval_seconds},
        name="campaign-worker",
        daemon=True,
    )
    thread.start()
    log_event(logger, "worker.started", interval_seconds=interval_seconds or settings.campaign_run_interval_seconds)
    return thread


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send due review campaign steps.")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    parser.add_argument("--interval", type=float, default=None, help="seconds between passes")
    parser.add_argument("--limit", type=int, default=None, help="max executions per pass")
    args = parser.parse_args(argv)

    setup_observability()
    if args.once:
        summary = run_campaign_pass(limit=args.limit)
        return 1 if summary.errors else 0

    stop_event = threading.Event()
    try:
        run_forever(stop_event, interval_seconds=args.interval)
    except KeyboardInterrupt:
        stop_event.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
