# lifecycle.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from errors import ConflictError, ConflictKind
from models import (
  LIVE_SUBSCRIPTION_STATUSES,
  EntityKind,
  InvoiceRead,
  InvoiceStatus,
  PlanRead,
  SubscriptionRead,
  SubscriptionStatus,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_TRANSITIONS = {
  SubscriptionStatus.TRIALING: {SubscriptionStatus.ACTIVE},
  SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED},
  SubscriptionStatus.PAST_DUE: {SubscriptionStatus.CANCELLED},
  SubscriptionStatus.CANCELLED: set(),
}

INVOICE_TRANSITIONS = {
  InvoiceStatus.DRAFT: {InvoiceStatus.OPEN, InvoiceStatus.PAID, InvoiceStatus.FAILED},
  InvoiceStatus.OPEN: {InvoiceStatus.PAID, InvoiceStatus.FAILED},
  InvoiceStatus.PAID: set(),
  InvoiceStatus.FAILED: set(),
}

TRANSITIONS = {
  EntityKind.SUBSCRIPTION: SUBSCRIPTION_TRANSITIONS,
  EntityKind.INVOICE: INVOICE_TRANSITIONS,
}


def _reject(kind: ConflictKind, message: str) -> ConflictError:
  logger.warning("rejected: %s (%s)", message, kind.value)
  return ConflictError(kind, message)


def check_transition(kind: EntityKind, current, requested) -> None:
  if current == requested:
    return
  allowed = TRANSITIONS[kind][current]
  if not allowed:
    raise _reject(ConflictKind.ALREADY_TERMINAL, f"{kind.label} is {current.value} and cannot change status")
  if requested not in allowed:
    raise _reject(
      ConflictKind.ILLEGAL_TRANSITION,
      f"{kind.label} cannot move from {current.value} to {requested.value}",
    )


def check_requested_status(kind: EntityKind, existing, requested) -> None:
  """Reject a status move before any field rules look at the merged record."""
  if kind in TRANSITIONS and requested is not None:
    check_transition(kind, existing.status, requested)


def apply_update(kind: EntityKind, existing, changes: Dict[str, Any]) -> Dict[str, Any]:
  """Check the status edge of an update and add the fields it implies."""
  changes = dict(changes)
  if kind not in TRANSITIONS or "status" not in changes:
    return changes
  check_transition(kind, existing.status, changes["status"])
  entering_cancelled = (
    kind is EntityKind.SUBSCRIPTION
    and changes["status"] == SubscriptionStatus.CANCELLED
    and existing.status != SubscriptionStatus.CANCELLED
  )
  if entering_cancelled:
    # the pending period-end intent, if any, is fulfilled now
    changes["cancel_at_period_end"] = False
  return changes


def cancel_subscription(existing: SubscriptionRead, at_period_end: bool, now: datetime) -> Dict[str, Any]:
  if at_period_end:
    if existing.status == SubscriptionStatus.CANCELLED:
      raise _reject(ConflictKind.ALREADY_TERMINAL, f"Subscription {existing.id} is already cancelled")
    # Recorded intent only; the switch to CANCELLED belongs to an external job.
    return {"cancel_at_period_end": True}
  # Immediate cancel overrides the state machine.
  return {
    "status": SubscriptionStatus.CANCELLED,
    "canceled_at": now,
    "cancel_at_period_end": False,
  }


def pay_invoice(existing: InvoiceRead, paid_at: Optional[datetime], now: datetime) -> Dict[str, Any]:
  if existing.status == InvoiceStatus.PAID:
    raise _reject(ConflictKind.ALREADY_TERMINAL, f"Invoice {existing.id} is already paid")
  check_transition(EntityKind.INVOICE, existing.status, InvoiceStatus.PAID)
  return {"status": InvoiceStatus.PAID, "paid_at": paid_at or now}


def guard_plan_delete(plan: PlanRead, live_subscriptions: int) -> None:
  if live_subscriptions > 0:
    statuses = "/".join(s.value for s in LIVE_SUBSCRIPTION_STATUSES)
    raise _reject(
      ConflictKind.REFERENCED_BY_ACTIVE_CHILDREN,
      f"Cannot delete plan {plan.id} with {live_subscriptions} {statuses} subscription(s). "
      "Set plan to inactive instead.",
    )


def guard_invoice_delete(invoice: InvoiceRead) -> None:
  if invoice.status == InvoiceStatus.PAID:
    raise _reject(ConflictKind.ALREADY_TERMINAL, f"Invoice {invoice.id} is paid and cannot be deleted")
