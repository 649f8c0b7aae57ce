from __future__ import annotations

import logging
import os
import threading
from datetime import timedelta
from typing import Callable

from flask import Flask

from invoice_sync.contexts.invoicing.application.queue_processor import (
    CycleResult,
    QueueProcessor,
    build_queue_processor,
)
from invoice_sync.core.clock import Clock, SystemClock, iso_utc
from invoice_sync.db import connect_database


class QueuePollingScheduler:
    """Runs ``QueueProcessor.run_cycle`` on a fixed interval until stopped.

    ``wait_fn(seconds)`` blocks for up to ``seconds`` and returns True when the
    loop should stop; it defaults to the stop event's ``wait`` so ``stop()``
    interrupts a sleep immediately. Tests pass a recording function instead.
    """

    def __init__(
        self,
        processor: QueueProcessor,
        *,
        interval_seconds: float = 10.0,
        initial_delay_seconds: float = 5.0,
        app: Flask | None = None,
        clock: Clock | None = None,
        wait_fn: Callable[[float], bool] | None = None,
    ) -> None:
        self.processor = processor
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self.app = app
        self._clock = clock or SystemClock()
        self._stop_event = processor.stop_event
        self._wait = wait_fn or self._stop_event.wait
        self._thread: threading.Thread | None = None
        self._logger = logging.getLogger("invoice_sync")

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run_forever, name="invoice-queue-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout)

    def run_once(self) -> CycleResult:
        if self.app is None:
            return self.processor.run_cycle()
        with self.app.app_context():
            return self.processor.run_cycle()

    def run_forever(self, max_cycles: int | None = None) -> int:
        cycles = 0
        if self.initial_delay_seconds > 0 and self._wait(self.initial_delay_seconds):
            return cycles
        while not self._stop_event.is_set():
            self.run_once()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            delay = self.processor.next_delay(self.interval_seconds)
            if delay > self.interval_seconds:
                self._logger.warning(
                    "invoice_queue_scheduler_cooling_down",
                    extra={
                        "delay_seconds": delay,
                        "resume_after": iso_utc(self._clock.now() + timedelta(seconds=delay)),
                    },
                )
            if self._wait(delay):
                break
        self._logger.info("invoice_queue_scheduler_stopped", extra={"cycles": cycles})
        return cycles


def start_queue_scheduler(app: Flask) -> QueuePollingScheduler | None:
    if not _should_start_scheduler(app):
        return None
    processor = build_queue_processor(connect_database(app.config["DB_PATH"]), app.config)
    scheduler = QueuePollingScheduler(
        processor,
        interval_seconds=_int_config(app, "QUEUE_INTERVAL_SECONDS", 10, 1, 3600),
        initial_delay_seconds=_int_config(app, "QUEUE_INITIAL_DELAY_SECONDS", 5, 0, 3600),
        app=app,
    )
    scheduler.start()
    app.extensions["invoice_queue_scheduler"] = scheduler
    app.logger.info(
        "invoice_queue_scheduler_started",
        extra={"interval_seconds": scheduler.interval_seconds, "batch_size": processor.batch_size},
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("QUEUE_WORKER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
