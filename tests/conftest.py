from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

import db
from billing_route import get_service
from billing_service import BillingService
from main import app
from models import EntityKind, InvoiceRead, InvoiceStatus, SubscriptionRead, SubscriptionStatus

NOW = datetime(2026, 3, 1, 12, 0, 0)


def iso(value: datetime) -> str:
  return value.isoformat()


class FrozenClock:
  def __init__(self, now: datetime):
    self.now = now

  def __call__(self) -> datetime:
    return self.now

  def advance(self, **delta) -> None:
    self.now += timedelta(**delta)


def invoice_payload(subscription, **overrides):
  payload = {
    "subscriptionId": subscription.id,
    "customerId": subscription.customer_id,
    "amount": 1250,
    "dueDate": iso(NOW + timedelta(days=14)),
    "lineItems": [
      {"description": "Seats", "quantity": 2, "unitPrice": 500, "total": 1000},
      {"description": "Support add-on", "quantity": 1, "unitPrice": 250, "total": 250},
    ],
  }
  payload.update(overrides)
  return payload


def stored_subscription(**overrides):
  values = dict(
    id=1, customer_id=1, plan_id=1, status=SubscriptionStatus.ACTIVE,
    start_date=NOW - timedelta(days=10), current_period_start=NOW - timedelta(days=10),
    current_period_end=NOW + timedelta(days=20), cancel_at_period_end=False, canceled_at=None,
    created_at=NOW, updated_at=NOW,
  )
  values.update(overrides)
  return SubscriptionRead(**values)


def stored_invoice(**overrides):
  values = dict(
    id=1, subscription_id=1, customer_id=1, amount=1250, due_date=NOW + timedelta(days=14),
    paid_at=None, status=InvoiceStatus.DRAFT,
    line_items=[
      {"description": "Seats", "quantity": 2, "unitPrice": 500, "total": 1000},
      {"description": "Support add-on", "quantity": 1, "unitPrice": 250, "total": 250},
    ],
    created_at=NOW, updated_at=NOW,
  )
  values.update(overrides)
  return InvoiceRead(**values)


@pytest.fixture
def engine():
  engine = db.create_db_engine("sqlite://", poolclass=StaticPool)
  db.init_db(engine)
  yield engine
  engine.dispose()


@pytest.fixture
def session(engine):
  with Session(engine) as session:
    yield session


@pytest.fixture
def clock():
  return FrozenClock(NOW)


@pytest.fixture
def service(session, clock):
  return BillingService(session, clock=clock)


@pytest.fixture
def client(service):
  app.dependency_overrides[get_service] = lambda: service
  yield TestClient(app)
  app.dependency_overrides.clear()


@pytest.fixture
def customer(service):
  return service.create(EntityKind.CUSTOMER, {"name": "Apex Retail Pvt Ltd", "email": "billing@apex.example"})


@pytest.fixture
def plan(service):
  return service.create(EntityKind.PLAN, {"name": "Growth", "price": 6999, "billingInterval": "MONTHLY"})


@pytest.fixture
def subscription(service, customer, plan):
  return service.create(EntityKind.SUBSCRIPTION, {
    "customerId": customer.id,
    "planId": plan.id,
    "status": "ACTIVE",
    "currentPeriodEnd": iso(NOW + timedelta(days=30)),
  })


@pytest.fixture
def invoice(service, subscription):
  return service.create(EntityKind.INVOICE, invoice_payload(subscription))
