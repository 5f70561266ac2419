"""Processor and platform fee allocation.

All arithmetic happens in integral cents. Two fee-bearing models exist:

* ``card`` - the payer absorbs the processor fee. The charge is grossed up so
  that after the processor deducts ``p * charge + f`` the full dues amount
  remains for the chapter (less the platform fee).
* ``bank_transfer`` - the chapter absorbs a percentage fee capped at a fixed
  amount; the payer is charged the dues amount only.

The platform fee is always computed on the dues amount, never on the charge.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from app.core.config import settings
from app.core.errors import ValidationError

CARD = "card"
BANK_TRANSFER = "bank_transfer"
METHOD_TYPES = (CARD, BANK_TRANSFER)

_METHOD_ALIASES = {
    "card": CARD,
    "bank_transfer": BANK_TRANSFER,
    "us_bank_account": BANK_TRANSFER,
    "ach": BANK_TRANSFER,
}

CENT = Decimal("0.01")
_ONE = Decimal(1)


def to_cents(amount: Decimal | int | str) -> int:
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def normalize_method_type(method_type: str | None) -> str:
    if not method_type:
        raise ValidationError("Payment method type is required")
    normalized = _METHOD_ALIASES.get(method_type.strip().lower())
    if normalized is None:
        raise ValidationError(f"Unsupported payment method type: {method_type}")
    return normalized


@dataclass(frozen=True)
class FeeSchedule:
    card_percent: Decimal
    card_fixed_cents: int
    bank_percent: Decimal
    bank_cap_cents: int
    platform_percent: Decimal

    @classmethod
    def from_settings(cls) -> "FeeSchedule":
        return cls(
            card_percent=Decimal(settings.CARD_FEE_PERCENT),
            card_fixed_cents=to_cents(settings.CARD_FEE_FIXED),
            bank_percent=Decimal(settings.BANK_FEE_PERCENT),
            bank_cap_cents=to_cents(settings.BANK_FEE_CAP),
            platform_percent=Decimal(settings.PLATFORM_FEE_PERCENT),
        )


@dataclass(frozen=True)
class FeeBreakdown:
    method_type: str
    dues_amount: int
    charge_amount: int
    processor_fee: int
    platform_fee: int
    transfer_amount: int

    def as_amounts(self) -> dict[str, Decimal]:
        """Return the breakdown in currency units, ready for persistence."""
        return {
            "amount": from_cents(self.dues_amount),
            "charge_amount": from_cents(self.charge_amount),
            "processor_fee": from_cents(self.processor_fee),
            "platform_fee": from_cents(self.platform_fee),
            "transfer_amount": from_cents(self.transfer_amount),
        }


def platform_fee(dues_amount: int, schedule: FeeSchedule) -> int:
    return int((Decimal(dues_amount) * schedule.platform_percent).to_integral_value(rounding=ROUND_HALF_UP))


def _card_processor_deduction(charge: int, schedule: FeeSchedule) -> int:
    raw = Decimal(charge) * schedule.card_percent + schedule.card_fixed_cents
    return int(raw.to_integral_value(rounding=ROUND_HALF_UP))


def _card_charge(dues_amount: int, schedule: FeeSchedule) -> int:
    if schedule.card_percent >= _ONE:
        raise ValidationError("Card fee percentage must be below 100%")
    exact = (Decimal(dues_amount) + schedule.card_fixed_cents) / (_ONE - schedule.card_percent)
    charge = int(exact.to_integral_value(rounding=ROUND_CEILING))
    # The processor rounds its own deduction to the cent, so the ceiling can overshoot by a cent.
    while charge - 1 >= dues_amount and charge - 1 - _card_processor_deduction(charge - 1, schedule) >= dues_amount:
        charge -= 1
    return charge


def calculate_fees(dues_amount: int, method_type: str, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    """Compute the charge, fees and chapter transfer for ``dues_amount`` cents."""
    if isinstance(dues_amount, bool) or not isinstance(dues_amount, int):
        raise ValidationError("Dues amount must be expressed in whole cents")
    if dues_amount <= 0:
        raise ValidationError("Nothing to charge: dues amount must be positive")
    method = normalize_method_type(method_type)
    schedule = schedule or FeeSchedule.from_settings()
    platform = platform_fee(dues_amount, schedule)

    if method == CARD:
        charge = _card_charge(dues_amount, schedule)
        processor = charge - dues_amount
        transfer = dues_amount - platform
    else:
        charge = dues_amount
        uncapped = int((Decimal(dues_amount) * schedule.bank_percent).to_integral_value(rounding=ROUND_CEILING))
        processor = min(uncapped, schedule.bank_cap_cents)
        transfer = dues_amount - processor - platform

    if transfer < 0:
        raise ValidationError("Amount is too small to cover processing fees")

    return FeeBreakdown(
        method_type=method,
        dues_amount=dues_amount,
        charge_amount=charge,
        processor_fee=processor,
        platform_fee=platform,
        transfer_amount=transfer,
    )


def calculate_fees_for_amount(amount: Decimal, method_type: str, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    return calculate_fees(to_cents(amount), method_type, schedule)
