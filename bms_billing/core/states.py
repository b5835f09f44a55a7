"""Billing state machine.

Two enums describe a tenant's billing state:

``AccountStatus``
    What the tenant is allowed to do. Owned by this service.
``SubscriptionStatus``
    Mirror of the provider's subscription status, plus ``pending`` (signed up,
    nothing at the provider yet) and ``expired`` (free trial ran out without a
    subscription).

Every account-status write goes through :func:`transition_account`, which
checks the move against ``ACCOUNT_TRANSITIONS``:

    pending_payment     -> active_trial | active | past_due_grace | suspended | cancelled
    free_trial_pending  -> active_trial | active | trial_expired | cancelled
    active_trial        -> active | trial_expired | past_due_grace | suspended | cancelled
    active              -> active_trial | past_due_grace | suspended | cancelled
    past_due_grace      -> active | active_trial | suspended | cancelled
    suspended           -> active | active_trial | past_due_grace | cancelled
    trial_expired       -> active | active_trial | suspended | cancelled
    cancelled           -> (terminal)
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class AccountStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    FREE_TRIAL_PENDING = "free_trial_pending"
    ACTIVE_TRIAL = "active_trial"
    ACTIVE = "active"
    PAST_DUE_GRACE = "past_due_grace"
    SUSPENDED = "suspended"
    TRIAL_EXPIRED = "trial_expired"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PENDING = "pending"
    EXPIRED = "expired"

    @classmethod
    def from_provider(cls, value: str | None) -> "SubscriptionStatus | None":
        """Map a provider status string, ``None`` for statuses we do not mirror."""
        if value == "cancelled":
            return cls.CANCELED
        try:
            return cls(value)
        except ValueError:
            return None


class ScheduleStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"
    RELEASED = "released"
    CANCELED = "canceled"

    @property
    def is_open(self) -> bool:
        return self in (ScheduleStatus.NOT_STARTED, ScheduleStatus.ACTIVE)


A = AccountStatus

ACCOUNT_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    A.PENDING_PAYMENT: frozenset({A.ACTIVE_TRIAL, A.ACTIVE, A.PAST_DUE_GRACE, A.SUSPENDED, A.CANCELLED}),
    A.FREE_TRIAL_PENDING: frozenset({A.ACTIVE_TRIAL, A.ACTIVE, A.TRIAL_EXPIRED, A.CANCELLED}),
    A.ACTIVE_TRIAL: frozenset({A.ACTIVE, A.TRIAL_EXPIRED, A.PAST_DUE_GRACE, A.SUSPENDED, A.CANCELLED}),
    A.ACTIVE: frozenset({A.ACTIVE_TRIAL, A.PAST_DUE_GRACE, A.SUSPENDED, A.CANCELLED}),
    A.PAST_DUE_GRACE: frozenset({A.ACTIVE, A.ACTIVE_TRIAL, A.SUSPENDED, A.CANCELLED}),
    A.SUSPENDED: frozenset({A.ACTIVE, A.ACTIVE_TRIAL, A.PAST_DUE_GRACE, A.CANCELLED}),
    A.TRIAL_EXPIRED: frozenset({A.ACTIVE, A.ACTIVE_TRIAL, A.SUSPENDED, A.CANCELLED}),
    A.CANCELLED: frozenset(),
}


def can_transition(current: AccountStatus, target: AccountStatus) -> bool:
    return current == target or target in ACCOUNT_TRANSITIONS[current]


def transition_account(projection: Any, target: AccountStatus) -> bool:
    """Move ``projection.account_status`` to ``target`` if the table allows it.

    Returns ``True`` when the projection ends up in ``target``. A rejected move
    is logged and leaves the status untouched.
    """
    current = AccountStatus(projection.account_status)
    if current == target:
        return True
    if target not in ACCOUNT_TRANSITIONS[current]:
        logger.warning(
            "billing.state.transition_rejected",
            tenant_id=projection.tenant_id,
            current=current.value,
            target=target.value,
        )
        return False
    projection.account_status = target
    return True
