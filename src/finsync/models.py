"""
models.py - Syncable record types and queue entries.

Every syncable table has a frozen dataclass variant. The variants form a
tagged union keyed by table name (RECORD_TYPES), so a queue entry payload
is always a typed record and is only turned into bytes by the store.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from finsync.errors import ValidationError


class Operation(str, Enum):
    """Kind of local mutation carried by a queue entry."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class QueueStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


META_FIELDS: tuple[str, ...] = ("id", "user_id", "created_at", "updated_at", "deleted_at")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")

# Value kinds used by FIELD_SPECS
_KINDS: dict[str, tuple[type, ...]] = {
    "str": (str,),
    "float": (int, float),
    "int": (int,),
    "bool": (bool, int),
    "date": (str,),
    "month": (str,),
}


@dataclass(frozen=True, kw_only=True)
class SyncableRecord:
    """
    Common shape of every syncable row.

    Timestamps are Unix microseconds. `deleted_at` is the soft-delete
    tombstone; `updated_at` is the only field used to resolve conflicts.

    Subclasses declare FIELD_SPECS: field name -> (kind, required).
    """
    TABLE: ClassVar[str] = ""
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {}
    CHOICES: ClassVar[dict[str, frozenset[str]]] = {}

    id: str
    user_id: str | None = None
    created_at: int
    updated_at: int
    deleted_at: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValidationError("id must be a non-empty string", field="id", value=self.id)
        for name in ("created_at", "updated_at"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError(f"{name} must be integer microseconds", field=name, value=value)
        if self.updated_at < self.created_at:
            raise ValidationError(
                "updated_at must not precede created_at",
                field="updated_at",
                value=self.updated_at,
            )
        if self.deleted_at is not None and not isinstance(self.deleted_at, int):
            raise ValidationError("deleted_at must be integer microseconds", field="deleted_at", value=self.deleted_at)

        for name, (kind, required) in self.FIELD_SPECS.items():
            value = getattr(self, name)
            if value is None:
                if required:
                    raise ValidationError(f"{self.TABLE}.{name} is required", field=name)
                continue
            if not isinstance(value, _KINDS[kind]) or (kind in ("float", "int") and isinstance(value, bool)):
                raise ValidationError(
                    f"{self.TABLE}.{name} must be {kind}",
                    field=name,
                    value=value,
                )
            if kind == "float" and isinstance(value, int):
                object.__setattr__(self, name, float(value))
            elif kind == "bool" and not isinstance(value, bool):
                object.__setattr__(self, name, bool(value))
            elif kind == "date" and not _DATE_RE.match(value):
                raise ValidationError(f"{self.TABLE}.{name} must be YYYY-MM-DD", field=name, value=value)
            elif kind == "month" and not _MONTH_RE.match(value):
                raise ValidationError(f"{self.TABLE}.{name} must be YYYY-MM", field=name, value=value)

        for name, allowed in self.CHOICES.items():
            value = getattr(self, name)
            if value is not None and value not in allowed:
                raise ValidationError(
                    f"{self.TABLE}.{name} must be one of {sorted(allowed)}",
                    field=name,
                    value=value,
                )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def user_field_names(cls) -> tuple[str, ...]:
        return tuple(cls.FIELD_SPECS)

    def user_values(self) -> dict[str, Any]:
        """User-visible field values, without sync metadata."""
        return {name: getattr(self, name) for name in self.FIELD_SPECS}


@dataclass(frozen=True, kw_only=True)
class Expense(SyncableRecord):
    TABLE: ClassVar[str] = "expenses"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "amount": ("float", True),
        "category_id": ("str", False),
        "note": ("str", False),
        "date": ("date", True),
    }

    amount: float | None = None
    category_id: str | None = None
    note: str | None = None
    date: str | None = None


@dataclass(frozen=True, kw_only=True)
class Budget(SyncableRecord):
    TABLE: ClassVar[str] = "budgets"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "month": ("month", True),
        "total_amount": ("float", True),
        "spending_limit": ("float", False),
    }

    month: str | None = None
    total_amount: float | None = None
    spending_limit: float | None = None


@dataclass(frozen=True, kw_only=True)
class SavingsGoal(SyncableRecord):
    TABLE: ClassVar[str] = "savings_goals"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "name": ("str", True),
        "target_amount": ("float", True),
        "target_date": ("date", True),
        "monthly_contribution": ("float", True),
        "why_statement": ("str", False),
        "privacy_level": ("str", True),
    }
    CHOICES: ClassVar[dict[str, frozenset[str]]] = {
        "privacy_level": frozenset({"private", "shared"}),
    }

    name: str | None = None
    target_amount: float | None = None
    target_date: str | None = None
    monthly_contribution: float | None = None
    why_statement: str | None = None
    privacy_level: str = "private"


@dataclass(frozen=True, kw_only=True)
class SavingsContribution(SyncableRecord):
    TABLE: ClassVar[str] = "savings_contributions"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "goal_id": ("str", True),
        "month": ("month", True),
        "amount": ("float", True),
        "is_full_amount": ("bool", False),
    }

    goal_id: str | None = None
    month: str | None = None
    amount: float | None = None
    is_full_amount: bool | None = None


@dataclass(frozen=True, kw_only=True)
class HabitGoal(SyncableRecord):
    TABLE: ClassVar[str] = "habit_goals"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "name": ("str", True),
        "category_id": ("str", True),
        "rule_type": ("str", True),
        "rule_value": ("float", True),
        "duration_months": ("int", False),
        "start_date": ("date", True),
        "privacy_level": ("str", True),
    }
    CHOICES: ClassVar[dict[str, frozenset[str]]] = {
        "rule_type": frozenset({"max_amount", "max_percentage", "reduce_by"}),
        "privacy_level": frozenset({"private", "shared"}),
    }

    name: str | None = None
    category_id: str | None = None
    rule_type: str | None = None
    rule_value: float | None = None
    duration_months: int | None = None
    start_date: str | None = None
    privacy_level: str = "private"


@dataclass(frozen=True, kw_only=True)
class HabitTracking(SyncableRecord):
    TABLE: ClassVar[str] = "habit_tracking"
    FIELD_SPECS: ClassVar[dict[str, tuple[str, bool]]] = {
        "habit_goal_id": ("str", True),
        "month": ("month", True),
        "spent_amount": ("float", True),
        "target_amount": ("float", True),
        "is_compliant": ("bool", False),
    }

    habit_goal_id: str | None = None
    month: str | None = None
    spent_amount: float | None = None
    target_amount: float | None = None
    is_compliant: bool | None = None


RECORD_TYPES: dict[str, type[SyncableRecord]] = {
    cls.TABLE: cls
    for cls in (Expense, Budget, SavingsGoal, SavingsContribution, HabitGoal, HabitTracking)
}


def record_type(table_name: str) -> type[SyncableRecord]:
    """Look up the record variant for a table, rejecting unknown names."""
    try:
        return RECORD_TYPES[table_name]
    except KeyError:
        raise ValidationError(
            f"Unknown syncable table: {table_name}",
            field="table_name",
            value=table_name,
        ) from None


def record_from_dict(table_name: str, data: dict[str, Any]) -> SyncableRecord:
    """
    Build a typed record from a plain mapping.

    Unknown keys (e.g. store-only columns such as synced_at) are ignored.
    """
    cls = record_type(table_name)
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def record_to_dict(record: SyncableRecord) -> dict[str, Any]:
    return dataclasses.asdict(record)


@dataclass(frozen=True)
class QueueEntry:
    """
    One pending outbound mutation.

    At most one entry exists per (table_name, record_id). `payload` is the
    record snapshot after the latest local mutation.
    """
    id: str
    table_name: str
    record_id: str
    operation: Operation
    payload: SyncableRecord
    user_id: str | None
    created_at: int
    attempts: int = 0
    last_attempt_at: int | None = None
    error_message: str | None = None
    status: QueueStatus = QueueStatus.PENDING

    @property
    def payload_version(self) -> int:
        """The payload's updated_at; bumps on every coalesced mutation."""
        return self.payload.updated_at

    @property
    def is_failed(self) -> bool:
        return self.status is QueueStatus.FAILED


@dataclass(frozen=True)
class SyncCursor:
    """
    Pull watermarks per table (the remote's change stamp of the newest
    record pulled). Passed into and returned from SyncEngine.pull; persisted
    only together with the records it covers.
    """
    watermarks: dict[str, int] = field(default_factory=dict)

    def since(self, table_name: str) -> int:
        return self.watermarks.get(table_name, 0)

    def advanced(self, table_name: str, value: int) -> "SyncCursor":
        if value <= self.since(table_name):
            return self
        return SyncCursor({**self.watermarks, table_name: value})
