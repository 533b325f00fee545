from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


# Reserved limit value meaning "no cap"; compare before doing arithmetic.
UNLIMITED = -1

LIFETIME_PERIOD_KEY = "lifetime"


class PeriodType(str, Enum):
    ONE_TIME = "one_time"
    DAILY = "daily"


@dataclass(frozen=True)
class QuotaDescriptor:
    """Typed view of a plan's quota blob.

    ``limit`` is a non-negative count per period or :data:`UNLIMITED`.
    One-time quotas count against a single lifetime period; daily quotas
    reset at the UTC day boundary.
    """

    period_type: PeriodType
    limit: int
    batch_ceiling: int = 1

    def __post_init__(self) -> None:
        if self.limit < 0 and self.limit != UNLIMITED:
            raise ValueError(f"limit must be >= 0 or {UNLIMITED}, got {self.limit}")
        if self.batch_ceiling < 1:
            raise ValueError(f"batch_ceiling must be >= 1, got {self.batch_ceiling}")

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def remaining(self, used: int) -> int:
        # Never subtract from the sentinel; unlimited stays unlimited.
        if self.is_unlimited:
            return UNLIMITED
        return max(self.limit - used, 0)

    def allows(self, used: int, requested: int = 1) -> bool:
        if self.is_unlimited:
            return True
        return used + requested <= self.limit

    def to_json(self) -> dict[str, Any]:
        return {
            "period_type": self.period_type.value,
            "limit": self.limit,
            "batch_ceiling": self.batch_ceiling,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any] | None) -> "QuotaDescriptor":
        if not isinstance(payload, dict):
            raise ValueError("quota payload must be an object")
        try:
            period_type = PeriodType(payload["period_type"])
            limit = int(payload["limit"])
        except KeyError as exc:
            raise ValueError(f"quota payload missing {exc.args[0]}") from exc
        batch_ceiling = int(payload.get("batch_ceiling", 1))
        return cls(period_type=period_type, limit=limit, batch_ceiling=batch_ceiling)
