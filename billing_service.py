# billing_service.py
from datetime import datetime
from typing import Any, Callable, List

from pydantic import BaseModel
from sqlmodel import Session

import lifecycle
from gateway import BillingGateway
from models import DETAIL_MODELS, EntityKind, InvoiceRead, SubscriptionRead, utcnow
from validation import Operation, requested_value, validate


class BillingService:
  """validate -> lifecycle -> gateway, for every mutation the API exposes."""

  def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
    self.clock = clock
    self.gateway = BillingGateway(session, clock=clock)

  def list(self, kind: EntityKind) -> List[BaseModel]:
    return self.gateway.list(kind)

  def get(self, kind: EntityKind, entity_id: int) -> BaseModel:
    return self.gateway.find(kind, entity_id)

  def detail(self, kind: EntityKind, entity_id: int) -> BaseModel:
    """The entity with the rows it owns embedded."""
    entity = self.gateway.find(kind, entity_id)
    related = self.gateway.related(kind, entity_id)
    return DETAIL_MODELS[kind].model_validate({**entity.model_dump(), **related})

  def create(self, kind: EntityKind, payload: Any) -> BaseModel:
    values = validate(Operation.CREATE, kind, payload, now=self.clock())
    return self.gateway.create(kind, values)

  def update(self, kind: EntityKind, entity_id: int, payload: Any) -> BaseModel:
    now = self.clock()
    existing = self.gateway.find(kind, entity_id)
    # illegal moves are conflicts even when the stamps would also fail validation
    lifecycle.check_requested_status(kind, existing, requested_value(kind, "status", payload))
    changes = validate(Operation.UPDATE, kind, payload, existing, now=now)
    changes = lifecycle.apply_update(kind, existing, changes)
    if not changes:
      return existing
    return self.gateway.update(kind, entity_id, changes)

  def delete(self, kind: EntityKind, entity_id: int) -> None:
    self.gateway.delete(kind, entity_id)

  def cancel_subscription(self, subscription_id: int, payload: Any = None) -> SubscriptionRead:
    now = self.clock()
    existing = self.gateway.find(EntityKind.SUBSCRIPTION, subscription_id)
    body = validate(Operation.CANCEL, EntityKind.SUBSCRIPTION, {} if payload is None else payload, now=now)
    changes = lifecycle.cancel_subscription(existing, body["cancel_at_period_end"], now)
    return self.gateway.update(EntityKind.SUBSCRIPTION, subscription_id, changes)

  def pay_invoice(self, invoice_id: int, payload: Any = None) -> InvoiceRead:
    now = self.clock()
    existing = self.gateway.find(EntityKind.INVOICE, invoice_id)
    body = validate(Operation.PAY, EntityKind.INVOICE, {} if payload is None else payload, now=now)
    changes = lifecycle.pay_invoice(existing, body["paid_at"], now)
    return self.gateway.update(EntityKind.INVOICE, invoice_id, changes)

  def pending_cancellations(self) -> List[SubscriptionRead]:
    return self.gateway.pending_period_end_cancellations(self.clock())
