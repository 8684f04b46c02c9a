"""
Recovery worker process entrypoint.

Periodically re-processes workflow events whose ``processed_at`` is still
empty after ``REPROCESS_GRACE_SEC``: events whose rule loading failed, or
whose processing was cut short by a restart. Run with:

    python -m careflow.worker

"""

from __future__ import annotations

import logging
import threading

from .core.config import settings, validate_runtime_settings
from .core.db import SessionLocal
from .core.errors import log_exception
from .logging_config import setup_logging
from .services.change_capture import install_change_capture
from .services.change_publisher import MqttChangePublisher
from .services.rule_engine import WorkflowRuleEngine


logger = logging.getLogger("worker")


def run_recovery_loop(
    engine: WorkflowRuleEngine,
    stop_event: threading.Event,
    *,
    interval_sec: int | None = None,
    batch_size: int = 100,
) -> None:
    interval = interval_sec if interval_sec is not None else settings.worker_interval_sec
    logger.info("Recovery worker started interval=%ss grace=%ss", interval, settings.reprocess_grace_sec)
    while not stop_event.is_set():
        try:
            engine.reprocess_stale(limit=batch_size)
        except Exception as exc:
            log_exception(logger, "Recovery pass failed", exc=exc)
        stop_event.wait(interval)
    logger.info("Recovery worker stopped")


def main() -> None:
    setup_logging()
    validate_runtime_settings()
    publisher = None
    if settings.enable_change_publisher:
        publisher = MqttChangePublisher()
        publisher.start()
        install_change_capture(SessionLocal, publisher)
    engine = WorkflowRuleEngine(max_workers=1)
    stop_event = threading.Event()
    try:
        run_recovery_loop(engine, stop_event)
    except KeyboardInterrupt:
        logger.info("Recovery worker interrupted")
    finally:
        stop_event.set()
        engine.shutdown(wait=False)
        if publisher:
            publisher.stop()


if __name__ == "__main__":
    main()
