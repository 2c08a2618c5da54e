# validation.py
"""Validation engine shared by every create, update and lifecycle action.

Two passes: structural checks per declared field (pydantic adapters built from
the field specs in models.py), then cross-field refinements evaluated against
the merged view of the stored entity and the validated payload. Errors from
both passes are collected and raised together.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from errors import FieldError, ValidationError
from models import (
  CANCEL_FIELDS,
  PAY_FIELDS,
  EntityKind,
  FieldSpec,
  InvoiceStatus,
  SubscriptionStatus,
  invoice_amount_ok,
  line_item_total_ok,
  utcnow,
)

IMMEDIATE_CANCEL_WINDOW = timedelta(hours=1)


class Operation(str, Enum):
  CREATE = "create"
  UPDATE = "update"
  CANCEL = "cancel"
  PAY = "pay"


class View:
  """Merged view of the stored entity and the incoming changes."""

  def __init__(self, operation: Operation, existing: Dict[str, Any], changes: Dict[str, Any], now: datetime):
    self.operation = operation
    self.now = now
    self.changes = changes
    self._existing = existing
    self._merged = dict(existing)
    self._merged.update(changes)

  def __getitem__(self, name: str) -> Any:
    return self._merged.get(name)

  def changed(self, name: str) -> bool:
    if name not in self.changes:
      return False
    if self.operation is not Operation.UPDATE:
      return True
    return self.changes[name] != self._existing.get(name)


class Refinement:
  def __init__(self, fields: Sequence[str], check: Callable[[View], List[FieldError]]):
    self.fields = frozenset(fields)
    self.check = check


_REFINEMENTS: Dict[Any, List[Refinement]] = {}


def refinement(target: Any, *fields: str):
  """Register a cross-field check; it is skipped when any of `fields` failed structurally."""
  def register(check):
    _REFINEMENTS.setdefault(target, []).append(Refinement(fields, check))
    return check
  return register


# ---- subscription ----

@refinement(EntityKind.SUBSCRIPTION, "current_period_start", "current_period_end")
def _period_end_after_start(view: View) -> List[FieldError]:
  if view["current_period_end"] <= view["current_period_start"]:
    return [FieldError("currentPeriodEnd", "Current period end must be after start")]
  return []


@refinement(EntityKind.SUBSCRIPTION, "current_period_end")
def _new_period_end_in_future(view: View) -> List[FieldError]:
  if view.operation is Operation.CREATE and view["current_period_end"] <= view.now:
    return [FieldError("currentPeriodEnd", "Current period end must be in the future")]
  return []


@refinement(EntityKind.SUBSCRIPTION, "status", "canceled_at")
def _cancelled_has_canceled_at(view: View) -> List[FieldError]:
  if view["status"] == SubscriptionStatus.CANCELLED and view["canceled_at"] is None:
    return [FieldError("canceledAt", "Canceled subscriptions must have a canceledAt date")]
  return []


@refinement(EntityKind.SUBSCRIPTION, "status", "canceled_at")
def _canceled_at_only_when_cancelled(view: View) -> List[FieldError]:
  if view["status"] != SubscriptionStatus.CANCELLED and view["canceled_at"] is not None:
    return [FieldError("canceledAt", "Only canceled subscriptions can have a canceledAt date")]
  return []


@refinement(EntityKind.SUBSCRIPTION, "status", "cancel_at_period_end", "canceled_at")
def _immediate_cancel_is_recent(view: View) -> List[FieldError]:
  # A period-end cancellation being carried out may be backdated; an immediate one may not.
  if view["status"] != SubscriptionStatus.CANCELLED or view["cancel_at_period_end"]:
    return []
  if view["canceled_at"] is None:
    return []
  if not (view.changed("status") or view.changed("canceled_at")):
    return []
  if view["canceled_at"] < view.now - IMMEDIATE_CANCEL_WINDOW:
    return [FieldError("canceledAt", "Immediate cancellation date should be recent")]
  return []


# ---- invoice ----

@refinement(EntityKind.INVOICE, "line_items")
def _line_item_totals(view: View) -> List[FieldError]:
  return [
    FieldError(f"lineItems.{i}.total", "Line item total must equal quantity * unit price")
    for i, item in enumerate(view["line_items"])
    if not line_item_total_ok(item)
  ]


@refinement(EntityKind.INVOICE, "amount", "line_items")
def _amount_matches_line_items(view: View) -> List[FieldError]:
  if not invoice_amount_ok(view["amount"], view["line_items"]):
    return [FieldError("amount", "Invoice amount must equal sum of line items")]
  return []


@refinement(EntityKind.INVOICE, "status", "paid_at")
def _paid_has_paid_at(view: View) -> List[FieldError]:
  if view["status"] == InvoiceStatus.PAID and view["paid_at"] is None:
    return [FieldError("paidAt", "Paid invoices must have a paidAt date")]
  return []


@refinement(EntityKind.INVOICE, "paid_at")
@refinement(Operation.PAY, "paid_at")
def _paid_at_not_in_future(view: View) -> List[FieldError]:
  if view["paid_at"] is not None and view["paid_at"] > view.now:
    return [FieldError("paidAt", "Payment date cannot be in the future")]
  return []


@refinement(EntityKind.INVOICE, "status", "paid_at")
def _paid_at_only_when_paid(view: View) -> List[FieldError]:
  if view["status"] != InvoiceStatus.PAID and view["paid_at"] is not None:
    return [FieldError("paidAt", "Only paid invoices can have a paidAt date")]
  return []


# ---- engine ----

def _specs_for(operation: Operation, kind: EntityKind) -> List[FieldSpec]:
  if operation is Operation.CANCEL:
    return CANCEL_FIELDS
  if operation is Operation.PAY:
    return PAY_FIELDS
  return kind.fields


def _refinements_for(operation: Operation, kind: EntityKind) -> List[Refinement]:
  if operation is Operation.CANCEL:
    return []
  if operation is Operation.PAY:
    return _REFINEMENTS.get(Operation.PAY, [])
  return _REFINEMENTS.get(kind, [])


def _field_errors(alias: str, exc: PydanticValidationError) -> List[FieldError]:
  out = []
  for err in exc.errors():
    path = ".".join([alias] + [str(part) for part in err["loc"]])
    if err["type"] == "value_error":
      message = str(err["ctx"]["error"])
    else:
      message = err["msg"]
    out.append(FieldError(path, message))
  return out


def requested_value(kind: EntityKind, name: str, payload: Any) -> Any:
  """Parsed value of one payload field; None when it is absent or malformed."""
  if not isinstance(payload, dict):
    return None
  for spec in kind.fields:
    if spec.name == name and spec.alias in payload:
      try:
        return spec.adapter.validate_python(payload[spec.alias])
      except PydanticValidationError:
        # validate() reports it with the rest of the structural errors
        return None
  return None


def current_values(kind: EntityKind, entity: BaseModel) -> Dict[str, Any]:
  return {spec.name: getattr(entity, spec.name) for spec in kind.fields}


def validate(
  operation: Operation,
  kind: EntityKind,
  payload: Any,
  existing: Optional[BaseModel] = None,
  now: Optional[datetime] = None,
) -> Dict[str, Any]:
  """Return the normalized values for `payload` or raise ValidationError.

  Create and action payloads come back complete with defaults applied; update
  payloads come back partial, holding only the fields the caller supplied.
  Keys are attribute names (snake_case); error paths use the wire names.
  """
  now = now or utcnow()
  if operation is Operation.UPDATE and existing is None:
    raise ValueError("update validation needs the stored entity")
  if not isinstance(payload, dict):
    raise ValidationError([FieldError("", "Expected a JSON object")])

  existing_values = current_values(kind, existing) if existing is not None else {}
  errors: List[FieldError] = []
  failed = set()
  values: Dict[str, Any] = {}

  for spec in _specs_for(operation, kind):
    if spec.alias not in payload:
      if operation is Operation.UPDATE:
        continue
      if spec.required:
        errors.append(FieldError(spec.alias, "Field required"))
        failed.add(spec.name)
      else:
        values[spec.name] = spec.default_value(now)
      continue

    try:
      value = spec.adapter.validate_python(payload[spec.alias])
    except PydanticValidationError as exc:
      errors.extend(_field_errors(spec.alias, exc))
      failed.add(spec.name)
      continue

    if operation is Operation.UPDATE and not spec.mutable:
      if value != existing_values.get(spec.name):
        errors.append(FieldError(spec.alias, "Field cannot be changed after creation"))
        failed.add(spec.name)
      continue
    values[spec.name] = value

  view = View(operation, existing_values, values, now)
  for rule in _refinements_for(operation, kind):
    if rule.fields & failed:
      continue
    errors.extend(rule.check(view))

  if errors:
    raise ValidationError(errors)
  return values
