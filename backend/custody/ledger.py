"""
Ledger primitives shared by entry, renewal and release bookkeeping.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.db import models

from .exceptions import ValidationError

DAYS_PER_MONTH = 30
CENTS = Decimal("0.01")


class PaymentType(models.TextChoices):
    ENTRY = "entry", "Entry"
    RENEWAL = "renewal", "Renewal"
    DELIVERY = "delivery", "Delivery"


class PaymentMethod(models.TextChoices):
    CASH = "cash", "Cash"
    UPI = "upi", "UPI"


class SettlementType(models.TextChoices):
    FREE = "free", "Free"
    PARTIAL = "partial", "Partial"
    FULL = "full", "Full"


def to_money(value, field_name: str = "amount") -> Decimal:
    """Coerce ``value`` to a non-negative two-place Decimal."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number")
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_payment_method(method: str) -> str:
    if method not in PaymentMethod.values:
        raise ValidationError(
            f"Invalid payment method '{method}'. Use one of: {', '.join(PaymentMethod.values)}"
        )
    return method


def settlement_type(amount_paid: Decimal, due_amount: Decimal) -> str:
    if amount_paid > 0:
        return SettlementType.PARTIAL if amount_paid < due_amount else SettlementType.FULL
    return SettlementType.FREE


def renewal_amount(rate_per_locker_per_month, months: int, number_of_lockers: int) -> Decimal:
    return to_money(Decimal(rate_per_locker_per_month) * months * number_of_lockers)


def months_to_timedelta(months: int) -> timedelta:
    return timedelta(days=months * DAYS_PER_MONTH)


def calculate_due_amount(expiry_date: datetime, at: datetime, rate_per_month) -> Decimal:
    """Storage charge owed for the time an entry sat past its expiry."""
    if at <= expiry_date:
        return Decimal("0.00")
    overdue_days = math.ceil((at - expiry_date).total_seconds() / 86400)
    overdue_months = max(1, math.ceil(overdue_days / DAYS_PER_MONTH))
    return to_money(Decimal(rate_per_month) * overdue_months)


@dataclass(frozen=True)
class LockerAssignment:
    """Binding of a locker number to a number of pots and the release ids taken from it."""

    locker_number: int
    total_pots: int
    dispatched_pots: tuple[str, ...] = field(default_factory=tuple)

    @property
    def remaining_pots(self) -> int:
        return self.total_pots - len(self.dispatched_pots)

    @classmethod
    def from_dict(cls, data: dict) -> "LockerAssignment":
        return cls(
            locker_number=int(data["locker_number"]),
            total_pots=int(data["total_pots"]),
            dispatched_pots=tuple(data.get("dispatched_pots") or ()),
        )

    def to_dict(self) -> dict:
        # remaining_pots is stored for readers of the raw document; it is
        # always recomputed from dispatched_pots on load.
        return {
            "locker_number": self.locker_number,
            "total_pots": self.total_pots,
            "remaining_pots": self.remaining_pots,
            "dispatched_pots": list(self.dispatched_pots),
        }
