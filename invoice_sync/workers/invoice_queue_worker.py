from __future__ import annotations

import argparse
import os
import uuid

from invoice_sync import create_app
from invoice_sync.contexts.invoicing.application.queue_processor import build_queue_processor
from invoice_sync.db import connect_database
from invoice_sync.observability import bind_request_id
from invoice_sync.scheduler import QueuePollingScheduler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Invoice posting queue worker.")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum entries per cycle.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between cycles.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    os.environ.setdefault("QUEUE_WORKER_ENABLED", "false")
    os.environ.setdefault("DB_AUTO_INIT", "false")
    app = create_app()

    config = dict(app.config)
    if args.limit:
        config["QUEUE_BATCH_SIZE"] = max(1, int(args.limit))
    interval_seconds = max(1, int(args.interval or app.config.get("QUEUE_INTERVAL_SECONDS", 10) or 10))

    db = connect_database(app.config["DB_PATH"])
    try:
        processor = build_queue_processor(db, config)
        if args.once:
            run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
            with app.app_context(), bind_request_id(run_request_id):
                result = processor.run_cycle()
            app.logger.info(
                "invoice_queue_worker_cycle_completed",
                extra={"request_id": run_request_id, "batch_size": processor.batch_size, **result.to_dict()},
            )
            return 0

        scheduler = QueuePollingScheduler(
            processor,
            interval_seconds=interval_seconds,
            initial_delay_seconds=0,
            app=app,
        )
        try:
            cycles = scheduler.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
            cycles = None
        app.logger.info("invoice_queue_worker_stopped", extra={"cycles": cycles})
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
