"""
Workflow rule engine.

``trigger`` records the event and returns as soon as it is durable; rule
matching and action execution run on a worker pool. Processing an event:

1. load active rules for the tenant and event type (priority desc, id asc),
2. keep the rules whose conditions hold and whose cooldown has elapsed,
3. run each rule's actions in order, recording every outcome,
4. stamp the rule's ``last_triggered_at``,
5. stamp the event's ``processed_at`` once every matched rule was attempted.

Only the audit append can fail a trigger. Everything after it is logged and
recorded on the event, and a rule-loading failure leaves ``processed_at``
empty so the recovery worker picks the event up again.
"""

from __future__ import annotations

import datetime
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from ..core.config import settings
from ..core.errors import log_exception
from ..models import WorkflowEvent, WorkflowRule, ensure_utc, utcnow
from ..schemas.workflow import WorkflowEventIn
from .action_executor import ActionExecutor, ActionOutcome, action_type_of
from .audit_log import AuditLogWriter
from .conditions import matches
from .rule_repository import RuleRepository


logger = logging.getLogger("rule_engine")


@dataclass
class TriggerReceipt:
    event_id: str
    future: Future


def in_cooldown(rule: WorkflowRule, now: datetime.datetime) -> bool:
    minutes = rule.cooldown_minutes or 0
    last = ensure_utc(rule.last_triggered_at)
    if minutes <= 0 or last is None:
        return False
    return now - last < datetime.timedelta(minutes=minutes)


class WorkflowRuleEngine:
    def __init__(
        self,
        *,
        audit: AuditLogWriter | None = None,
        rules: RuleRepository | None = None,
        executor: ActionExecutor | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.audit = audit or AuditLogWriter()
        self.rules = rules or RuleRepository(self.audit.session_factory)
        self.executor = executor or ActionExecutor(self.audit.session_factory)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.workflow_worker_threads,
            thread_name_prefix="workflow",
        )

    def trigger(self, event_in: WorkflowEventIn) -> TriggerReceipt:
        """Record the event and schedule rule processing.

        Raises :class:`~careflow.core.errors.DispatchFailure` if the event could
        not be recorded; in that case no rule is loaded and no action runs.
        """
        event = self.audit.append_event(event_in)
        future = self._pool.submit(self._process_safely, event.id)
        return TriggerReceipt(event_id=event.id, future=future)

    def _process_safely(self, event_id: str) -> Optional[dict]:
        try:
            return self.process(event_id)
        except Exception as exc:
            log_exception(logger, "Workflow processing crashed", extra={"event_id": event_id}, exc=exc)
            return None

    def process(self, event_id: str) -> Optional[dict]:
        """Run matching rules for a recorded event. Returns the stored outcome."""
        event = self.audit.get_event(event_id)
        if event is None:
            logger.warning("Workflow event not found id=%s", event_id)
            return None
        if event.processed_at is not None:
            logger.info("Workflow event already processed id=%s", event_id)
            return event.outcome

        try:
            rules = self.rules.load_active(event.tenant_id, event.event_type)
        except Exception as exc:
            log_exception(logger, "Rule loading failed", extra={"event_id": event.id}, exc=exc)
            try:
                self.audit.record_error(event.id, f"rule loading failed: {exc}")
            except Exception as record_exc:
                log_exception(logger, "Could not record rule loading failure", extra={"event_id": event.id}, exc=record_exc)
            return None

        now = utcnow()
        matched = [r for r in rules if matches(r.conditions, event.payload) and not in_cooldown(r, now)]
        outcome = {
            "rules_loaded": len(rules),
            "rules_matched": len(matched),
            "actions_ok": 0,
            "actions_failed": 0,
        }

        for rule in matched:
            ok, failed = self._run_rule(rule, event)
            outcome["actions_ok"] += ok
            outcome["actions_failed"] += failed
            try:
                self.rules.touch_last_triggered(rule.id)
            except Exception as exc:
                log_exception(logger, "Could not update last_triggered_at", extra={"rule_id": rule.id}, exc=exc)

        try:
            self.audit.mark_processed(event.id, outcome)
        except Exception as exc:
            log_exception(logger, "Could not mark event processed", extra={"event_id": event.id}, exc=exc)
        logger.info(
            "Workflow event processed id=%s type=%s matched=%s ok=%s failed=%s",
            event.id,
            event.event_type,
            outcome["rules_matched"],
            outcome["actions_ok"],
            outcome["actions_failed"],
        )
        return outcome

    def _run_rule(self, rule: WorkflowRule, event: WorkflowEvent) -> tuple[int, int]:
        ok = failed = 0
        for index, action in enumerate(rule.actions or []):
            try:
                result = self.executor.execute(action, event, rule_id=rule.id)
            except Exception as exc:
                log_exception(logger, "Action raised", extra={"rule_id": rule.id, "index": index}, exc=exc)
                result = ActionOutcome(action_type=action_type_of(action), ok=False, reason=str(exc))
            if result.ok:
                ok += 1
            else:
                failed += 1
            try:
                self.audit.record_action(
                    event,
                    rule_id=rule.id,
                    action_index=index,
                    action_type=result.action_type,
                    ok=result.ok,
                    attempts=result.attempts,
                    error=result.reason,
                    record_id=result.record_id,
                )
            except Exception as exc:
                log_exception(logger, "Could not record action outcome", extra={"event_id": event.id, "index": index}, exc=exc)
        return ok, failed

    def reprocess_stale(self, *, grace_sec: int | None = None, limit: int = 100) -> int:
        """Re-run events left unprocessed for longer than the grace period."""
        grace = grace_sec if grace_sec is not None else settings.reprocess_grace_sec
        cutoff = utcnow() - datetime.timedelta(seconds=grace)
        event_ids = self.audit.list_unprocessed(older_than=cutoff, limit=limit)
        done = 0
        for event_id in event_ids:
            if self._process_safely(event_id) is not None:
                done += 1
        if event_ids:
            logger.info("Reprocessed stale events found=%s processed=%s", len(event_ids), done)
        return done

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
