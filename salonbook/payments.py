"""Payment status state machine and deposit calculation."""
from __future__ import annotations

from typing import Iterable, Optional

from .preferences import DepositPolicy
from .timeutil import to_iso, utc_now

PAYMENT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "UNPAID": ("AUTHORIZED", "PAID"),
    "DEPOSIT_DUE": ("AUTHORIZED", "PAID"),
    "AUTHORIZED": ("PAID", "REFUNDED", "PARTIALLY_REFUNDED"),
    "PAID": ("REFUNDED", "PARTIALLY_REFUNDED"),
    "PARTIALLY_REFUNDED": ("PAID", "REFUNDED"),
    "REFUNDED": (),
}

REFUND_STATUSES = ("REFUNDED", "PARTIALLY_REFUNDED")


class PaymentTransitionError(Exception):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Payment status cannot change from {current} to {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, ())


def apply_payment_status(
    appointment,
    status: str,
    *,
    performed_by: dict[str, object],
    note: Optional[str] = None,
    amount: Optional[float] = None,
) -> dict[str, object]:
    """Move the appointment to ``status`` and append an entry to ``metadata.paymentHistory``.

    Raises PaymentTransitionError when the transition table does not allow the change.
    The caller commits the session.
    """
    if not can_transition(appointment.payment_status, status):
        raise PaymentTransitionError(appointment.payment_status, status)

    entry = {
        "status": status,
        "previousStatus": appointment.payment_status,
        "note": note or None,
        "amount": amount,
        "currency": appointment.currency,
        "at": to_iso(utc_now()),
        "performedByStaff": performed_by,
    }
    metadata = dict(appointment.meta or {})
    history = list(metadata.get("paymentHistory") or [])
    history.append(entry)
    metadata["paymentHistory"] = history
    # Reassign so SQLAlchemy notices the JSON change.
    appointment.meta = metadata
    appointment.payment_status = status
    return entry


def calculate_deposit_amount(
    policy: Optional[DepositPolicy],
    total_cents: int,
    service_ids: Iterable[str],
) -> int:
    """Deposit in cents: the larger of the percentage and flat portions, 0 when the policy does not apply."""
    if policy is None:
        return 0
    if policy.threshold_amount is not None and total_cents < policy.threshold_amount:
        return 0
    if policy.applies_to_service_ids:
        wanted = set(policy.applies_to_service_ids)
        if not any(str(service_id) in wanted for service_id in service_ids):
            return 0
    percentage_portion = round(total_cents * policy.percentage / 100) if policy.percentage is not None else 0
    flat_portion = policy.flat_amount if policy.flat_amount is not None else 0
    return max(percentage_portion, flat_portion)
