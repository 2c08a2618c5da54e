# gateway.py
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List

from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

import lifecycle
from errors import (
  BillingError,
  ConflictError,
  ConflictKind,
  FieldError,
  NotFoundError,
  ReferentialError,
  StoreError,
  ValidationError,
)
from models import (
  LIVE_SUBSCRIPTION_STATUSES,
  EntityKind,
  Invoice,
  InvoiceStatus,
  Subscription,
  SubscriptionRead,
  SubscriptionStatus,
  utcnow,
)

logger = logging.getLogger(__name__)

UNIQUE_FIELDS = {
  EntityKind.CUSTOMER: ("email",),
  EntityKind.PLAN: ("name",),
}

REFERENCES = {
  EntityKind.SUBSCRIPTION: (("customer_id", EntityKind.CUSTOMER), ("plan_id", EntityKind.PLAN)),
  EntityKind.INVOICE: (("subscription_id", EntityKind.SUBSCRIPTION), ("customer_id", EntityKind.CUSTOMER)),
}

# rows embedded in an entity detail: (key, child kind, column pointing at the owner)
RELATED = {
  EntityKind.CUSTOMER: (
    ("subscriptions", EntityKind.SUBSCRIPTION, "customer_id"),
    ("invoices", EntityKind.INVOICE, "customer_id"),
  ),
  EntityKind.PLAN: (("subscriptions", EntityKind.SUBSCRIPTION, "plan_id"),),
  EntityKind.SUBSCRIPTION: (("invoices", EntityKind.INVOICE, "subscription_id"),),
}

# sqlstate codes raised by postgres drivers
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"


class BillingGateway:
  """All reads and writes against the store go through here.

  Store integrity failures come back as the billing error types, deletes run
  their business locks first, and cascades commit as a single transaction.
  """

  def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
    self.session = session
    self.clock = clock

  # ---- reads ----

  def find(self, kind: EntityKind, entity_id: int) -> BaseModel:
    return self._read(kind, self._get(kind, entity_id))

  def list(self, kind: EntityKind) -> List[BaseModel]:
    table = kind.table
    stmt = select(table).order_by(col(table.created_at).desc(), col(table.id).desc())
    return [self._read(kind, row) for row in self.session.exec(stmt).all()]

  def count_live_subscriptions(self, plan_id: int) -> int:
    stmt = (
      select(func.count())
      .select_from(Subscription)
      .where(col(Subscription.plan_id) == plan_id)
      .where(col(Subscription.status).in_(LIVE_SUBSCRIPTION_STATUSES))
    )
    return self.session.exec(stmt).one()

  def related(self, kind: EntityKind, entity_id: int) -> Dict[str, List[BaseModel]]:
    self._get(kind, entity_id)
    out = {}
    for key, child, column in RELATED.get(kind, ()):
      table = child.table
      stmt = (
        select(table)
        .where(col(getattr(table, column)) == entity_id)
        .order_by(col(table.created_at).desc(), col(table.id).desc())
      )
      out[key] = [self._read(child, row) for row in self.session.exec(stmt).all()]
    return out

  def pending_period_end_cancellations(self, now: datetime) -> List[SubscriptionRead]:
    """Subscriptions whose period ended with a cancellation still pending."""
    stmt = (
      select(Subscription)
      .where(col(Subscription.cancel_at_period_end).is_(True))
      .where(col(Subscription.status) != SubscriptionStatus.CANCELLED)
      .where(col(Subscription.current_period_end) <= now)
      .order_by(col(Subscription.current_period_end), col(Subscription.id))
    )
    return [self._read(EntityKind.SUBSCRIPTION, row) for row in self.session.exec(stmt).all()]

  # ---- writes ----

  def create(self, kind: EntityKind, values: Dict[str, Any]) -> BaseModel:
    self._check_unique(kind, values)
    self._check_references(kind, values)
    now = self.clock()
    row = kind.table(**self._columns(values), created_at=now, updated_at=now)
    with self._transaction(kind):
      self.session.add(row)
    self.session.refresh(row)
    logger.info("created %s id=%s", kind.value, row.id)
    return self._read(kind, row)

  def update(self, kind: EntityKind, entity_id: int, changes: Dict[str, Any]) -> BaseModel:
    row = self._get(kind, entity_id)
    self._check_unique(kind, changes, exclude_id=entity_id)
    with self._transaction(kind):
      for name, value in self._columns(changes).items():
        setattr(row, name, value)
      row.updated_at = self.clock()
      self.session.add(row)
    self.session.refresh(row)
    logger.info("updated %s id=%s fields=%s", kind.value, entity_id, sorted(changes))
    return self._read(kind, row)

  def delete(self, kind: EntityKind, entity_id: int) -> None:
    row = self._get(kind, entity_id)
    if kind is EntityKind.PLAN:
      lifecycle.guard_plan_delete(self._read(kind, row), self.count_live_subscriptions(entity_id))
    elif kind is EntityKind.INVOICE:
      lifecycle.guard_invoice_delete(self._read(kind, row))

    with self._transaction(kind):
      removed = self._delete_children(kind, entity_id)
      self.session.delete(row)
    logger.info("deleted %s id=%s (cascaded %d rows)", kind.value, entity_id, removed)

  # ---- internals ----

  @contextmanager
  def _transaction(self, kind: EntityKind):
    try:
      yield
      self.session.commit()
    except IntegrityError as exc:
      self.session.rollback()
      raise self._translate(kind, exc) from exc
    except SQLAlchemyError as exc:
      self.session.rollback()
      logger.exception("store failure on %s", kind.value)
      raise StoreError(f"store failure on {kind.value}") from exc
    except BillingError:
      self.session.rollback()
      raise

  def _translate(self, kind: EntityKind, exc: IntegrityError) -> BillingError:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    text = str(exc.orig).lower()
    if code == _UNIQUE_VIOLATION or "unique" in text or "duplicate" in text:
      logger.warning("unique constraint hit on %s: %s", kind.value, exc.orig)
      return ConflictError(ConflictKind.DUPLICATE_UNIQUE, f"{kind.label} violates a unique constraint")
    if code == _FOREIGN_KEY_VIOLATION or "foreign key" in text:
      logger.warning("foreign key constraint hit on %s: %s", kind.value, exc.orig)
      return ReferentialError("record", "foreign key")
    logger.error("unclassified integrity error on %s: %s", kind.value, exc.orig)
    return StoreError(f"store rejected {kind.value} write")

  def _get(self, kind: EntityKind, entity_id: int):
    row = self.session.get(kind.table, entity_id)
    if row is None:
      raise NotFoundError(kind.label, entity_id)
    return row

  def _read(self, kind: EntityKind, row) -> BaseModel:
    model = kind.read_model
    return model.model_validate({name: getattr(row, name) for name in model.model_fields})

  def _columns(self, values: Dict[str, Any]) -> Dict[str, Any]:
    columns = dict(values)
    if "line_items" in columns:
      columns["line_items"] = [item.model_dump(by_alias=True) for item in columns["line_items"]]
    return columns

  def _check_unique(self, kind: EntityKind, values: Dict[str, Any], exclude_id: Any = None) -> None:
    table = kind.table
    for name in UNIQUE_FIELDS.get(kind, ()):
      if name not in values:
        continue
      stmt = select(table.id).where(col(getattr(table, name)) == values[name])
      if exclude_id is not None:
        stmt = stmt.where(col(table.id) != exclude_id)
      if self.session.exec(stmt).first() is not None:
        logger.warning("duplicate %s %s rejected", kind.value, name)
        raise ConflictError(
          ConflictKind.DUPLICATE_UNIQUE,
          f"A {kind.value} with this {to_camel(name)} already exists",
        )

  def _check_references(self, kind: EntityKind, values: Dict[str, Any]) -> None:
    for name, target in REFERENCES.get(kind, ()):
      if self.session.get(target.table, values[name]) is None:
        raise ReferentialError(target.label, to_camel(name), values[name])
    if kind is EntityKind.INVOICE:
      subscription = self.session.get(Subscription, values["subscription_id"])
      if subscription.customer_id != values["customer_id"]:
        raise ValidationError([
          FieldError("customerId", "Invoice customer must match the subscription's customer"),
        ])

  def _rows(self, table, *criteria) -> list:
    return list(self.session.exec(select(table).where(*criteria)).all())

  def _delete_children(self, kind: EntityKind, entity_id: int) -> int:
    """Delete owned rows, grandchildren first, inside the caller's transaction."""
    if kind is EntityKind.CUSTOMER:
      groups = [
        self._rows(Invoice, col(Invoice.customer_id) == entity_id),
        self._rows(Subscription, col(Subscription.customer_id) == entity_id),
      ]
    elif kind is EntityKind.SUBSCRIPTION:
      groups = [self._rows(Invoice, col(Invoice.subscription_id) == entity_id)]
    elif kind is EntityKind.PLAN:
      # only non-live subscriptions remain once the plan guard has passed
      subscriptions = self._rows(Subscription, col(Subscription.plan_id) == entity_id)
      ids = [s.id for s in subscriptions]
      invoices = self._rows(Invoice, col(Invoice.subscription_id).in_(ids)) if ids else []
      paid = sum(1 for i in invoices if i.status == InvoiceStatus.PAID)
      if paid:
        logger.warning("deleting plan %s removes %d paid invoice(s)", entity_id, paid)
      groups = [invoices, subscriptions]
    else:
      groups = []

    removed = 0
    for group in groups:
      for child in group:
        self.session.delete(child)
      removed += len(group)
      self.session.flush()
    return removed
