from enum import Enum


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    EXPIRED = "expired"
    CANCELED = "canceled"


VALID_TRANSITIONS = {
    SubscriptionStatus.INACTIVE: [SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.ACTIVE],
    SubscriptionStatus.PENDING_PAYMENT: [
        SubscriptionStatus.PENDING_PAYMENT,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.INACTIVE,
        SubscriptionStatus.CANCELED,
    ],
    # An "active" row that is not active at checkout time (not started, zero quantity) can be re-purchased.
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.PENDING_PAYMENT,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ],
    SubscriptionStatus.PAST_DUE: [
        SubscriptionStatus.PENDING_PAYMENT,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELED,
    ],
    SubscriptionStatus.UNPAID: [
        SubscriptionStatus.PENDING_PAYMENT,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELED,
    ],
    SubscriptionStatus.EXPIRED: [SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.ACTIVE],
    SubscriptionStatus.CANCELED: [SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.ACTIVE],
}


class InvalidSubscriptionTransition(Exception):
    def __init__(self, from_state: SubscriptionStatus, to_state: SubscriptionStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid subscription transition: {from_state.value} -> {to_state.value}")


def coerce_status(value) -> SubscriptionStatus:
    """Unknown stored values are treated as inactive."""
    try:
        return SubscriptionStatus(str(value or "").strip().lower())
    except ValueError:
        return SubscriptionStatus.INACTIVE


def can_transition(from_state: SubscriptionStatus, to_state: SubscriptionStatus) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: SubscriptionStatus, to_state: SubscriptionStatus) -> SubscriptionStatus:
    """Return the new state or raise InvalidSubscriptionTransition."""
    if not can_transition(from_state, to_state):
        raise InvalidSubscriptionTransition(from_state, to_state)
    return to_state


def apply_transition(subscription, to_state: SubscriptionStatus) -> None:
    """Validate and write the new status onto a subscription row."""
    subscription.status = transition(coerce_status(subscription.status), to_state).value
