# billing_route.py
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from sqlmodel import Session

from billing_service import BillingService
from db import get_session
from models import (
  CustomerDetail,
  CustomerRead,
  EntityKind,
  InvoiceRead,
  PlanDetail,
  PlanRead,
  SubscriptionDetail,
  SubscriptionRead,
)

router = APIRouter(prefix="/api", tags=["billing"])


def get_service(session: Session = Depends(get_session)) -> BillingService:
  return BillingService(session)


def _match(q: str, *values: Any) -> bool:
  ql = q.strip().lower()
  return any(ql in str(v or "").lower() for v in values)


@router.get("/subscriptions/pending-cancellations", response_model=List[SubscriptionRead])
def list_pending_cancellations(service: BillingService = Depends(get_service)):
  # feed for the external period-end job; nothing here flips the status
  return service.pending_cancellations()


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
  subscription_id: int,
  payload: Any = Body(default=None),
  service: BillingService = Depends(get_service),
):
  return service.cancel_subscription(subscription_id, payload)


@router.post("/invoices/{invoice_id}/pay", response_model=InvoiceRead)
def pay_invoice(
  invoice_id: int,
  payload: Any = Body(default=None),
  service: BillingService = Depends(get_service),
):
  return service.pay_invoice(invoice_id, payload)


def _crud(
  kind: EntityKind,
  path: str,
  read_model: type,
  searchable: Callable[[BaseModel], tuple],
  detail_model: Optional[type] = None,
) -> None:
  def list_entities(q: Optional[str] = None, service: BillingService = Depends(get_service)):
    rows = service.list(kind)
    if not q:
      return rows
    return [r for r in rows if _match(q, *searchable(r))]

  def get_entity(entity_id: int, service: BillingService = Depends(get_service)):
    return service.get(kind, entity_id)

  def create_entity(payload: Any = Body(...), service: BillingService = Depends(get_service)):
    return service.create(kind, payload)

  def update_entity(entity_id: int, payload: Any = Body(...), service: BillingService = Depends(get_service)):
    return service.update(kind, entity_id, payload)

  def delete_entity(entity_id: int, service: BillingService = Depends(get_service)):
    service.delete(kind, entity_id)
    return {"ok": True, "id": entity_id}

  name = kind.value
  router.add_api_route(path, list_entities, methods=["GET"], response_model=List[read_model], name=f"list_{name}s")
  router.add_api_route(path, create_entity, methods=["POST"], response_model=read_model, status_code=201, name=f"create_{name}")
  router.add_api_route(f"{path}/{{entity_id}}", get_entity, methods=["GET"], response_model=read_model, name=f"get_{name}")
  router.add_api_route(f"{path}/{{entity_id}}", update_entity, methods=["PATCH"], response_model=read_model, name=f"update_{name}")
  router.add_api_route(f"{path}/{{entity_id}}", delete_entity, methods=["DELETE"], name=f"delete_{name}")

  if detail_model is not None:
    def get_entity_detail(entity_id: int, service: BillingService = Depends(get_service)):
      return service.detail(kind, entity_id)

    router.add_api_route(
      f"{path}/{{entity_id}}/detail", get_entity_detail, methods=["GET"], response_model=detail_model,
      name=f"get_{name}_detail",
    )


_crud(
  EntityKind.CUSTOMER, "/customers", CustomerRead,
  lambda r: (r.id, r.name, r.email, r.status.value), CustomerDetail,
)
_crud(
  EntityKind.PLAN, "/plans", PlanRead,
  lambda r: (r.id, r.name, r.description, r.billing_interval.value), PlanDetail,
)
_crud(
  EntityKind.SUBSCRIPTION, "/subscriptions", SubscriptionRead,
  lambda r: (r.id, r.customer_id, r.plan_id, r.status.value), SubscriptionDetail,
)
_crud(EntityKind.INVOICE, "/invoices", InvoiceRead, lambda r: (r.id, r.customer_id, r.subscription_id, r.status.value))
