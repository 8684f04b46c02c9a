"""
Error taxonomy and shared error-handling helpers.

Failures before an event is durably recorded are raised to the caller.
Failures after that point are logged and recorded, never raised, so a
committed event is neither lost nor retried into duplicate side effects.
"""

from __future__ import annotations

import logging


class CareflowError(Exception):
    """Base class for workflow and change propagation errors."""


class DispatchFailure(CareflowError):
    """The event could not be appended to the audit log; the caller must retry."""

    def __init__(self, message: str, *, tenant_id: str | None = None, event_type: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.event_type = event_type
        super().__init__(message)


class ActionFailure(CareflowError):
    """A single workflow action failed. Recorded in the action log, never raised to producers."""

    def __init__(self, action_type: str, reason: str) -> None:
        self.action_type = action_type
        self.reason = reason
        super().__init__(f"{action_type} failed: {reason}")


class ChannelError(CareflowError):
    """Transport-level failure of a tenant channel; triggers a bounded reconnect."""


class ExhaustedReconnect(CareflowError):
    """Terminal channel failure after the configured number of reconnect attempts."""

    def __init__(self, tenant_id: str, attempts: int, last_error: Exception | None = None) -> None:
        self.tenant_id = tenant_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Channel for tenant {tenant_id} gave up after {attempts} reconnect attempts"
            + (f": {last_error}" if last_error else "")
        )


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: Exception | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")
