"""
Entry point for the careflow backend.

This module creates the FastAPI application, includes all API routers and
wires the long-lived services onto ``app.state``. Run with:

    uvicorn careflow.main:app --reload

"""

from __future__ import annotations

import logging
from fastapi import FastAPI

from .core.db import engine, SessionLocal
from .models import Base
from .services.change_capture import install_change_capture
from .services.change_publisher import MqttChangePublisher
from .services.rule_engine import WorkflowRuleEngine
from .realtime.client import ChangePropagationClient
from .scripts.run_migrations import run_migrations_to_head

from .api import api_router
from .core.config import settings, get_app_env, validate_runtime_settings
from .core.errors import log_exception
from .logging_config import setup_logging


def create_app() -> FastAPI:
    app = FastAPI(title="careflow", version="0.1.0")
    # Include API routers
    app.include_router(api_router)
    app.state.rule_engine = None
    app.state.change_publisher = None
    app.state.change_client = None

    @app.on_event("startup")
    def _startup() -> None:
        setup_logging()
        logger = logging.getLogger("startup")
        env = get_app_env()
        validate_runtime_settings()
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if settings.auto_run_migrations:
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        if settings.enable_change_publisher:
            publisher = MqttChangePublisher()
            publisher.start()
            install_change_capture(SessionLocal, publisher)
            app.state.change_publisher = publisher
        app.state.rule_engine = WorkflowRuleEngine()
        app.state.change_client = ChangePropagationClient()
        logger.info("careflow started env=%s workers=%s", env, settings.workflow_worker_threads)

    @app.on_event("shutdown")
    def _shutdown() -> None:
        rule_engine = getattr(app.state, "rule_engine", None)
        if rule_engine:
            rule_engine.shutdown(wait=True)
        client = getattr(app.state, "change_client", None)
        if client:
            client.close_all()
        publisher = getattr(app.state, "change_publisher", None)
        if publisher:
            publisher.stop()

    return app


app = create_app()
