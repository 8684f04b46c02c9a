"""
Change propagation client.

Combines the subscription multiplexer with a cache reconciler per
subscription: every notification a handle receives is applied to that
handle's :class:`CacheStore`, and the ``on_change`` listener is told which
cache keys changed. The preset builders describe the usual consumer views.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

from ..schemas.changes import Operation, SubscriptionDescriptor, field_equals
from .multiplexer import ConnectionStatus, ErrorCallback, Handle, StatusCallback, SubscriptionMultiplexer, TransportFactory
from .reconciler import CacheReconciler, CacheStore
from .transport import mqtt_transport_factory


logger = logging.getLogger("change_client")

ChangeListener = Callable[[Handle, List[str]], None]
ReseedCallback = Callable[[Handle], None]


class ChangePropagationClient:
    def __init__(
        self,
        multiplexer: Optional[SubscriptionMultiplexer] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        if multiplexer is None:
            multiplexer = SubscriptionMultiplexer(transport_factory or mqtt_transport_factory)
        self.multiplexer = multiplexer

    def subscribe(
        self,
        tenant_id: str,
        descriptors: Iterable[SubscriptionDescriptor],
        *,
        store: Optional[CacheStore] = None,
        on_change: Optional[ChangeListener] = None,
        on_error: Optional[ErrorCallback] = None,
        on_status: Optional[StatusCallback] = None,
        reseed: Optional[ReseedCallback] = None,
    ) -> Handle:
        """Open a handle whose caches follow the tenant's change feed.

        Changes published while a channel is down are not replayed. ``reseed``
        runs on the handle's consumer thread each time the channel comes back
        after a drop, so the consumer can reload its lists into ``handle.store``.
        """
        store = store or CacheStore()
        reconciler = CacheReconciler(store, tenant_id=tenant_id)

        def _apply(handle: Handle, notification) -> None:
            touched = reconciler.apply(notification, handle.descriptors)
            if touched and on_change is not None:
                on_change(handle, touched)

        lost = False

        def _status(handle: Handle, status: ConnectionStatus) -> None:
            nonlocal lost
            if status == ConnectionStatus.RECONNECTING:
                lost = True
            elif status == ConnectionStatus.CONNECTED and lost:
                lost = False
                if reseed is not None:
                    logger.info("Reseeding caches tenant=%s", handle.tenant_id)
                    reseed(handle)
            if on_status is not None:
                on_status(handle, status)

        handle = self.multiplexer.open(
            tenant_id,
            list(descriptors),
            _apply,
            on_error=on_error,
            on_status=_status,
            store=store,
        )
        logger.info("Subscribed tenant=%s descriptors=%s", tenant_id, len(handle.descriptors))
        return handle

    def status(self, tenant_id: str) -> Optional[ConnectionStatus]:
        return self.multiplexer.statuses().get(tenant_id)

    def close_all(self) -> None:
        self.multiplexer.close_all()


# --- Presets -------------------------------------------------------------------

ADMIN_TABLES = {
    "patients": "patients",
    "appointments": "appointments",
    "payments": "payments",
    "patient_queue": "queue",
    "prescriptions": "prescriptions",
    "lab_orders": "lab_orders",
    "workflow_tasks": "workflow_tasks",
    "escalations": "escalations",
}


def admin_view() -> List[SubscriptionDescriptor]:
    """Everything in the tenant, each list also feeding ``admin-stats``."""
    return [
        SubscriptionDescriptor(entity_type=table, cache_keys=(key, "admin-stats"))
        for table, key in ADMIN_TABLES.items()
    ]


def patient_view(patient_id: str) -> List[SubscriptionDescriptor]:
    return [
        SubscriptionDescriptor(
            entity_type="patients",
            cache_keys=(f"patient:{patient_id}",),
            operations=frozenset({Operation.UPDATE}),
            filter=field_equals("id", patient_id),
        ),
        SubscriptionDescriptor(
            entity_type="appointments",
            cache_keys=(f"patient-appointments:{patient_id}",),
            filter=field_equals("patient_id", patient_id),
        ),
        SubscriptionDescriptor(
            entity_type="prescriptions",
            cache_keys=(f"patient-prescriptions:{patient_id}",),
            filter=field_equals("patient_id", patient_id),
        ),
        SubscriptionDescriptor(
            entity_type="lab_orders",
            cache_keys=(f"patient-labs:{patient_id}",),
            filter=field_equals("patient_id", patient_id),
        ),
    ]


def role_view(actor_id: str, role: Optional[str] = None) -> List[SubscriptionDescriptor]:
    """Work queue of one operator (doctor, nurse, ...)."""
    descriptors = [
        SubscriptionDescriptor(
            entity_type="appointments",
            cache_keys=("my-appointments", "appointments"),
            filter=field_equals("doctor_id", actor_id),
        ),
        SubscriptionDescriptor(entity_type="patient_queue", cache_keys=("queue", "waiting-patients")),
        SubscriptionDescriptor(
            entity_type="consultations",
            cache_keys=("my-consultations",),
            filter=field_equals("doctor_id", actor_id),
        ),
        SubscriptionDescriptor(
            entity_type="notifications",
            cache_keys=("notifications", f"notifications:{actor_id}"),
            operations=frozenset({Operation.INSERT}),
            filter=field_equals("recipient_id", actor_id),
        ),
        SubscriptionDescriptor(
            entity_type="workflow_tasks",
            cache_keys=("my-tasks",),
            filter=field_equals("assigned_to", actor_id),
        ),
    ]
    if role:
        descriptors.append(
            SubscriptionDescriptor(
                entity_type="workflow_tasks",
                cache_keys=(f"role-tasks:{role}",),
                filter=field_equals("assigned_role", role),
            )
        )
    return descriptors
