"""
Canonical transaction record (SSOT).

This is THE record shape that flows through correlation: the candidate
finder reads it, the oracle describes it, the merge resolver rewrites it.
Nothing else in the package invents another transaction model.

Identity shadow:
- amount, currency and merchant are what matching keys on
- a merge never overwrites them when the winner already has a value
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class InputKind(str, Enum):
    """Channel a transaction record was extracted from."""

    IMAGE = "image"
    EMAIL = "email"
    SMS = "sms"
    VOICE = "voice"
    TEXT = "text"
    MANUAL = "manual"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "InputKind":
        """Map a loose channel label onto a known kind."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class TransactionStatus(str, Enum):
    """Lifecycle status of a stored transaction."""

    ACTIVE = "active"
    ABSORBED = "absorbed"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | date | datetime | None) -> datetime | None:
    """
    Parse a timestamp into an aware datetime.

    Date-only inputs ("2025-01-24" or a date object) become midnight, which
    is how the rest of the package recognizes a record without time-of-day.
    Naive datetimes are taken as UTC.

    Returns:
        Aware datetime, or None if the value is empty or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def has_precise_time(value: datetime | None) -> bool:
    """Return True if the timestamp carries a time-of-day (not exactly midnight)."""
    if value is None:
        return False
    return not (value.hour == 0 and value.minute == 0 and value.second == 0)


def parse_amount(value: Any) -> Decimal | None:
    """Parse an amount to Decimal, or None if it cannot be read."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, str):
            cleaned = value.replace(",", "").strip()
            return Decimal(cleaned)
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _format_decimal(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _format_timestamp(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


@dataclass
class LineItem:
    """Individual purchased item."""

    name: str
    quantity: Decimal = Decimal("1")
    price: Decimal | None = None

    @property
    def key(self) -> str:
        """Case-insensitive identity used when unioning item lists."""
        return self.name.strip().casefold()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "quantity": _format_decimal(self.quantity),
            "price": _format_decimal(self.price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        quantity = parse_amount(data.get("quantity"))
        return cls(
            name=str(data.get("name") or ""),
            quantity=quantity if quantity is not None else Decimal("1"),
            price=parse_amount(data.get("price")),
        )


@dataclass
class SourceEntry:
    """Provenance of a transaction: which channel contributed it."""

    input_kind: InputKind
    external_ref: str | None = None
    added_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str]:
        """Identity of this provenance entry.

        Entries without an external reference fall back to their creation
        time so two distinct ref-less arrivals stay distinct, while a retried
        merge of the same object is still recognized.
        """
        return (self.input_kind.value, self.external_ref or self.added_at.isoformat())

    def to_dict(self) -> dict:
        return {
            "input_kind": self.input_kind.value,
            "external_ref": self.external_ref,
            "added_at": _format_timestamp(self.added_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceEntry":
        added_at = parse_timestamp(data.get("added_at")) or utc_now()
        return cls(
            input_kind=InputKind.parse(data.get("input_kind") or data.get("input_type")),
            external_ref=data.get("external_ref") or data.get("uri"),
            added_at=added_at,
        )


@dataclass
class Transaction:
    """
    A financial transaction record as seen by the correlation engine.

    `id` is assigned by the store; an in-flight record that has not been
    persisted yet has `id = None`. `version` is the optimistic concurrency
    counter bumped by every store update.
    """

    owner: str
    merchant: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    occurred_at: datetime | None = None
    items: list[LineItem] = field(default_factory=list)
    sources: list[SourceEntry] = field(default_factory=list)
    category: str | None = None
    id: str | None = None
    correlation_id: str | None = None
    status: TransactionStatus = TransactionStatus.ACTIVE
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @property
    def is_active(self) -> bool:
        return self.status == TransactionStatus.ACTIVE

    @property
    def has_precise_time(self) -> bool:
        return has_precise_time(self.occurred_at)

    @property
    def primary_input_kind(self) -> InputKind:
        """Channel of the first provenance entry."""
        return self.sources[0].input_kind if self.sources else InputKind.UNKNOWN

    @property
    def source_keys(self) -> list[tuple[str, str]]:
        return [source.key for source in self.sources]

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "owner": self.owner,
            "merchant": self.merchant,
            "amount": _format_decimal(self.amount),
            "currency": self.currency,
            "occurred_at": _format_timestamp(self.occurred_at),
            "items": [item.to_dict() for item in self.items],
            "sources": [source.to_dict() for source in self.sources],
            "category": self.category,
            "correlation_id": self.correlation_id,
            "status": self.status.value,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        """Deserialize from a dictionary (accepts `userId`/`timestamp` aliases)."""
        owner = data.get("owner") or data.get("userId") or data.get("user_id")
        if not owner:
            raise ValueError("transaction owner is required")
        status = data.get("status") or TransactionStatus.ACTIVE.value
        return cls(
            id=data.get("id"),
            owner=str(owner),
            merchant=data.get("merchant"),
            amount=parse_amount(data.get("amount")),
            currency=data.get("currency"),
            occurred_at=parse_timestamp(data.get("occurred_at") or data.get("timestamp")),
            items=[LineItem.from_dict(item) for item in data.get("items") or []],
            sources=[SourceEntry.from_dict(source) for source in data.get("sources") or []],
            category=data.get("category"),
            correlation_id=data.get("correlation_id"),
            status=TransactionStatus(status),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            version=int(data.get("version") or 0),
        )
