"""
Schemas for the per-tenant change feed.

A ``ChangeNotification`` is one insert/update/delete of one record, as
published on ``{prefix}/{tenant_id}/changes``. A ``SubscriptionDescriptor``
states which notifications a consumer cares about and which of its caches they
touch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, model_validator


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ALL_OPERATIONS: FrozenSet[Operation] = frozenset(Operation)


class ChangeNotification(BaseModel):
    entity_type: str
    operation: Operation
    tenant_id: str
    record: Optional[Dict[str, Any]] = None
    record_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "ChangeNotification":
        if self.operation == Operation.DELETE:
            if self.record_id is None and self.record and self.record.get("id") is not None:
                self.record_id = str(self.record["id"])
            if self.record_id is None:
                raise ValueError("delete notifications require record_id")
        else:
            if not self.record or self.record.get("id") is None:
                raise ValueError(f"{self.operation.value} notifications require a record with an id")
        return self

    @property
    def key_id(self) -> str:
        """Identity of the touched record."""
        if self.operation == Operation.DELETE:
            return str(self.record_id)
        return str(self.record["id"])  # type: ignore[index]

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "entity_type": self.entity_type,
            "operation": self.operation.value,
            "tenant_id": self.tenant_id,
        }
        if self.operation == Operation.DELETE:
            body["record_id"] = self.record_id
        else:
            body["record"] = self.record
        return body


RecordFilter = Callable[[Dict[str, Any]], bool]


@dataclass(frozen=True)
class SubscriptionDescriptor:
    entity_type: str
    cache_keys: Tuple[str, ...]
    operations: FrozenSet[Operation] = ALL_OPERATIONS
    filter: Optional[RecordFilter] = field(default=None, compare=False)

    def wants(self, notification: ChangeNotification) -> bool:
        return (
            notification.entity_type == self.entity_type
            and notification.operation in self.operations
        )

    def accepts(self, record: Optional[Dict[str, Any]]) -> bool:
        # Nothing to test without a record.
        if self.filter is None or record is None:
            return True
        return bool(self.filter(record))


def field_equals(name: str, value: Any) -> RecordFilter:
    """Equality filter on one record field, compared as strings."""
    expected = str(value)

    def _match(record: Dict[str, Any]) -> bool:
        got = record.get(name)
        return got is not None and str(got) == expected

    return _match
