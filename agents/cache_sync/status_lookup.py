"""Immutable status label/color lookups for order, shipping and stock codes."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, NamedTuple

DEFAULT_STATUS_COLOR = "#6c757d"

PAYMENT_STATUS_COLORS = MappingProxyType(
    {
        "PAID": "#28a745",
        "UNPAID": "#dc3545",
        "PENDING": "#ffc107",
        "OVERDUE": "#dc3545",
        "NOT_APPLICABLE": DEFAULT_STATUS_COLOR,
    }
)


class StatusName(NamedTuple):
    label: str
    color: str


@dataclass(frozen=True)
class StatusDefinitions:
    """Raw status rows as delivered by the ERP adapter."""

    order: list[dict[str, Any]] = field(default_factory=list)
    shipping: list[dict[str, Any]] = field(default_factory=list)
    stock: list[dict[str, Any]] = field(default_factory=list)


class StatusLookup:
    """Read-only code -> ``StatusName`` mappings.

    Built once per sync cycle and passed into snapshot normalization; never
    mutated afterwards.
    """

    def __init__(
        self,
        order: Mapping[int, StatusName] | None = None,
        shipping: Mapping[str, StatusName] | None = None,
        stock: Mapping[str, StatusName] | None = None,
    ):
        self._order = MappingProxyType(dict(order or {}))
        self._shipping = MappingProxyType(dict(shipping or {}))
        self._stock = MappingProxyType(dict(stock or {}))

    @classmethod
    def empty(cls) -> "StatusLookup":
        return cls()

    @classmethod
    def from_definitions(cls, definitions: StatusDefinitions) -> "StatusLookup":
        order = {}
        for row in definitions.order:
            status_id = row.get("statusId", row.get("id"))
            if status_id is None:
                continue
            order[int(status_id)] = StatusName(
                label=row.get("name") or f"Status {status_id}",
                color=row.get("color") or DEFAULT_STATUS_COLOR,
            )
        return cls(
            order=order,
            shipping=_by_code(definitions.shipping),
            stock=_by_code(definitions.stock),
        )

    def order_status(self, status_id: int | None) -> StatusName:
        found = self._order.get(status_id) if status_id is not None else None
        if found:
            return found
        label = f"Status {status_id}" if status_id is not None else "Unknown"
        return StatusName(label, DEFAULT_STATUS_COLOR)

    def shipping_status(self, code: str | None) -> StatusName:
        return self._shipping.get(code) or StatusName(code or "Unknown", DEFAULT_STATUS_COLOR)

    def stock_status(self, code: str | None) -> StatusName:
        return self._stock.get(code) or StatusName(code or "Unknown", DEFAULT_STATUS_COLOR)

    def __len__(self) -> int:
        return len(self._order) + len(self._shipping) + len(self._stock)


def payment_status_color(payment_status: str | None) -> str:
    return PAYMENT_STATUS_COLORS.get(payment_status or "", DEFAULT_STATUS_COLOR)


def _by_code(rows: Iterable[dict[str, Any]]) -> dict[str, StatusName]:
    mapping = {}
    for row in rows:
        code = row.get("code")
        if not code:
            continue
        mapping[code] = StatusName(
            label=row.get("description") or row.get("name") or code,
            color=row.get("color") or DEFAULT_STATUS_COLOR,
        )
    return mapping
