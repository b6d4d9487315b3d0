# bhejo-tracking/bhejo/lifecycle.py
"""
Order lifecycle state machine.

One place owns every status transition of an order:

    pending --accept--> assigned --start--> in-transit --complete--> delivered

Each action has a fixed source and target status plus a list of guard
predicates (actor role, assignment, OTP verification). Guards return a
user-facing reason when they refuse, and ``evaluate`` wraps the first refusal
in a rejected TransitionResult instead of raising. The same status order is
used to keep the tracking mirror from moving backwards.

Side actions that do not move the status (OTP verification, payment, rating)
have their own guard checks here too, so the service layer only applies
writes.
"""

from __future__ import annotations

import random
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from . import config
from .models import Actor, Order, OrderStatus, PaymentStatus, TransitionResult


class Action(Enum):
    """Status-changing actions a partner can take on an order."""
    ACCEPT = "accept"
    START = "start"
    COMPLETE = "complete"


TRANSITIONS: Dict[Action, Tuple[OrderStatus, OrderStatus]] = {
    Action.ACCEPT: (OrderStatus.PENDING, OrderStatus.ASSIGNED),
    Action.START: (OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT),
    Action.COMPLETE: (OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED),
}


@dataclass
class GuardContext:
    """Facts about the world a guard may need beyond the order itself."""
    active_orders: int = 0
    max_active_orders: int = config.MAX_ACTIVE_ORDERS_PER_PARTNER


Guard = Callable[[Order, Actor, GuardContext], Optional[str]]


def _must_be_partner(order: Order, actor: Actor, ctx: GuardContext) -> Optional[str]:
    if not actor.is_partner:
        return "Only delivery partners can update order status"
    return None


def _must_be_unassigned(order: Order, actor: Actor, ctx: GuardContext) -> Optional[str]:
    if order.partner_id is not None:
        return "Order has already been accepted by another partner"
    return None


def _must_have_capacity(order: Order, actor: Actor, ctx: GuardContext) -> Optional[str]:
    if ctx.active_orders >= ctx.max_active_orders:
        return "Finish your current delivery before accepting another order"
    return None


def _must_be_assigned_partner(order: Order, actor: Actor, ctx: GuardContext) -> Optional[str]:
    if order.partner_id != actor.user_id:
        return "Only the assigned partner can update this order"
    return None


def _must_have_verified_otp(order: Order, actor: Actor, ctx: GuardContext) -> Optional[str]:
    if not order.otp_verified:
        return "Please verify delivery OTP first"
    return None


GUARDS: Dict[Action, List[Guard]] = {
    Action.ACCEPT: [_must_be_partner, _must_be_unassigned, _must_have_capacity],
    Action.START: [_must_be_partner, _must_be_assigned_partner],
    Action.COMPLETE: [_must_be_partner, _must_be_assigned_partner, _must_have_verified_otp],
}


def can_advance(current: OrderStatus, new: OrderStatus) -> bool:
    """True if moving from ``current`` to ``new`` does not go backwards."""
    return new.rank >= current.rank


def evaluate(
    action: Action,
    order: Order,
    actor: Actor,
    context: Optional[GuardContext] = None,
) -> TransitionResult:
    """
    Decide whether ``actor`` may perform ``action`` on ``order``.

    Pure: nothing is written. The caller applies the transition, using the
    source status as the compare-and-set precondition.

    Returns:
        Accepted result carrying the target status in ``extra['target']``,
        or a rejected result with the reason
    """
    context = context or GuardContext()
    source, target = TRANSITIONS[action]
    if order.status is not source:
        return TransitionResult.rejected(
            f"Cannot {action.value} an order that is {order.status.value}", order
        )
    for guard in GUARDS[action]:
        reason = guard(order, actor, context)
        if reason:
            return TransitionResult.rejected(reason, order)
    return TransitionResult.accepted(order, source=source, target=target)


# =============================================================================
# OTP
# =============================================================================

def generate_otp(rng: Optional[random.Random] = None) -> str:
    """
    Generate a 6-digit delivery OTP, uniform over OTP_MIN..OTP_MAX.

    Uses the ``secrets`` generator unless a seeded ``rng`` is given.
    """
    if rng is not None:
        return str(rng.randint(config.OTP_MIN, config.OTP_MAX))
    return str(config.OTP_MIN + secrets.randbelow(config.OTP_MAX - config.OTP_MIN + 1))


def otp_matches(stored: Optional[str], candidate: str) -> bool:
    """Exact string comparison; no trimming or other normalisation."""
    if not stored:
        return False
    return secrets.compare_digest(stored.encode(), candidate.encode())


def check_verify_otp(order: Order, actor: Actor, candidate: str) -> Optional[str]:
    """Reason the OTP submission is refused, or None if it matches."""
    if not actor.is_partner or order.partner_id != actor.user_id:
        return "Only the assigned partner can verify the delivery OTP"
    if order.status is not OrderStatus.IN_TRANSIT and not order.otp_verified:
        return "OTP can only be verified while the order is in transit"
    if not candidate:
        return "Please enter the OTP"
    if not order.delivery_otp:
        return "No OTP found for this order. Please generate one first."
    if not otp_matches(order.delivery_otp, candidate):
        return "Invalid OTP. Please check and try again"
    return None


def check_regenerate_otp(order: Order, actor: Actor) -> Optional[str]:
    if not actor.is_partner or order.partner_id != actor.user_id:
        return "Only the assigned partner can generate a delivery OTP"
    if order.status is not OrderStatus.IN_TRANSIT:
        return "A delivery OTP can only be generated while the order is in transit"
    if order.otp_verified:
        return "Delivery OTP has already been verified"
    return None


# =============================================================================
# PAYMENT AND RATING
# =============================================================================

def check_mark_paid(order: Order, actor: Actor) -> Optional[str]:
    if not actor.is_partner or order.partner_id != actor.user_id:
        return "Only the assigned partner can record payment"
    if order.status is not OrderStatus.DELIVERED:
        return "Payment can only be collected after delivery"
    if order.payment_status is PaymentStatus.PAID:
        return "Payment has already been recorded"
    return None


def check_rating(order: Order, actor: Actor, rating: int) -> Optional[str]:
    if actor.user_id != order.customer_id:
        return "Only the customer who placed the order can rate it"
    if order.status is not OrderStatus.DELIVERED:
        return "Orders can only be rated after delivery"
    if order.rated:
        return "This order has already been rated"
    if order.partner_id is None:
        return "Order has no delivery partner to rate"
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        return "Please select a rating between 1 and 5"
    return None


def fold_rating(average: float, count: int, rating: int) -> Tuple[float, int]:
    """
    Add one rating to a running average.

    Returns:
        (new_average, new_count) where new_average = (average*count + rating) / (count+1)
    """
    new_count = count + 1
    return ((average * count) + rating) / new_count, new_count
