# models.py
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Strict, TypeAdapter
from pydantic import Field as Constraint
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> datetime:
  # every timestamp in the store is naive UTC
  return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
  if value.tzinfo is not None:
    value = value.astimezone(timezone.utc).replace(tzinfo=None)
  return value


def _timestamp(nullable: bool = False, index: bool = False) -> Column:
  # naive UTC column; bypasses sqlmodel's timezone-required datetime type
  return Column(DateTime(timezone=False), nullable=nullable, index=index)


class CustomerStatus(str, Enum):
  ACTIVE = "ACTIVE"
  TRIALING = "TRIALING"
  CANCELLED = "CANCELLED"


class BillingInterval(str, Enum):
  MONTHLY = "MONTHLY"
  YEARLY = "YEARLY"


class SubscriptionStatus(str, Enum):
  TRIALING = "TRIALING"
  ACTIVE = "ACTIVE"
  PAST_DUE = "PAST_DUE"
  CANCELLED = "CANCELLED"


class InvoiceStatus(str, Enum):
  DRAFT = "DRAFT"
  OPEN = "OPEN"
  PAID = "PAID"
  FAILED = "FAILED"


# Subscriptions in these states keep their plan alive.
LIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


# ---- tables ----

class Customer(SQLModel, table=True):
  id: Optional[int] = Field(default=None, primary_key=True)
  name: str
  email: str = Field(unique=True, index=True)
  status: CustomerStatus = CustomerStatus.ACTIVE
  created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(index=True))
  updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Plan(SQLModel, table=True):
  id: Optional[int] = Field(default=None, primary_key=True)
  name: str = Field(unique=True, index=True)
  description: Optional[str] = None
  price: int  # minor units
  billing_interval: BillingInterval
  trial_period_days: Optional[int] = None
  is_active: bool = True
  created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(index=True))
  updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Subscription(SQLModel, table=True):
  id: Optional[int] = Field(default=None, primary_key=True)
  customer_id: int = Field(foreign_key="customer.id", index=True)
  plan_id: int = Field(foreign_key="plan.id", index=True)
  status: SubscriptionStatus = SubscriptionStatus.TRIALING
  start_date: datetime = Field(sa_column=_timestamp())
  current_period_start: datetime = Field(sa_column=_timestamp())
  current_period_end: datetime = Field(sa_column=_timestamp(index=True))
  cancel_at_period_end: bool = False
  canceled_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
  created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(index=True))
  updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Invoice(SQLModel, table=True):
  id: Optional[int] = Field(default=None, primary_key=True)
  subscription_id: int = Field(foreign_key="subscription.id", index=True)
  customer_id: int = Field(foreign_key="customer.id", index=True)
  amount: int  # minor units
  due_date: datetime = Field(sa_column=_timestamp())
  paid_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
  status: InvoiceStatus = InvoiceStatus.DRAFT
  # stored in wire form: [{"description", "quantity", "unitPrice", "total"}, ...]
  line_items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
  created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(index=True))
  updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


# ---- field types ----

def _check_email(value: str) -> str:
  if not EMAIL_RE.match(value):
    raise ValueError("Invalid email format")
  return value


NonEmptyStr = Annotated[str, Strict(), Constraint(min_length=1)]
Email = Annotated[str, Strict(), AfterValidator(_check_email)]
PositiveInt = Annotated[int, Strict(), Constraint(gt=0)]
Money = Annotated[int, Strict(), Constraint(ge=0)]
Flag = Annotated[bool, Strict()]
Timestamp = Annotated[datetime, AfterValidator(to_naive_utc)]


# ---- wire models ----

class WireModel(BaseModel):
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LineItem(WireModel):
  description: NonEmptyStr
  quantity: PositiveInt
  unit_price: Money
  total: Money


LineItems = Annotated[List[LineItem], Constraint(min_length=1)]


class CustomerRead(WireModel):
  id: int
  name: str
  email: str
  status: CustomerStatus
  created_at: datetime
  updated_at: datetime


class PlanRead(WireModel):
  id: int
  name: str
  description: Optional[str] = None
  price: int
  billing_interval: BillingInterval
  trial_period_days: Optional[int] = None
  is_active: bool
  created_at: datetime
  updated_at: datetime


class SubscriptionRead(WireModel):
  id: int
  customer_id: int
  plan_id: int
  status: SubscriptionStatus
  start_date: datetime
  current_period_start: datetime
  current_period_end: datetime
  cancel_at_period_end: bool
  canceled_at: Optional[datetime] = None
  created_at: datetime
  updated_at: datetime


class InvoiceRead(WireModel):
  id: int
  subscription_id: int
  customer_id: int
  amount: int
  due_date: datetime
  paid_at: Optional[datetime] = None
  status: InvoiceStatus
  line_items: List[LineItem]
  created_at: datetime
  updated_at: datetime


class CustomerDetail(CustomerRead):
  subscriptions: List[SubscriptionRead]
  invoices: List[InvoiceRead]


class PlanDetail(PlanRead):
  subscriptions: List[SubscriptionRead]


class SubscriptionDetail(SubscriptionRead):
  invoices: List[InvoiceRead]


# ---- invariants ----

def line_item_total_ok(item: LineItem) -> bool:
  return item.total == item.quantity * item.unit_price


def invoice_amount_ok(amount: int, line_items: List[LineItem]) -> bool:
  return amount == sum(item.total for item in line_items)


# ---- field specs ----

NOW = object()  # default sentinel: the request's "now"


class FieldSpec:
  def __init__(self, name: str, annotation: Any, required: bool = False, default: Any = None, mutable: bool = True):
    self.name = name
    self.alias = to_camel(name)
    self.adapter = TypeAdapter(annotation)
    self.required = required
    self.default = default
    self.mutable = mutable

  def default_value(self, now: datetime) -> Any:
    return now if self.default is NOW else self.default

  def __repr__(self) -> str:
    return f"FieldSpec({self.alias!r})"


class EntityKind(str, Enum):
  CUSTOMER = "customer"
  PLAN = "plan"
  SUBSCRIPTION = "subscription"
  INVOICE = "invoice"

  @property
  def label(self) -> str:
    return self.value.capitalize()

  @property
  def table(self):
    return TABLES[self]

  @property
  def read_model(self):
    return READ_MODELS[self]

  @property
  def fields(self) -> List[FieldSpec]:
    return FIELD_SPECS[self]


TABLES = {
  EntityKind.CUSTOMER: Customer,
  EntityKind.PLAN: Plan,
  EntityKind.SUBSCRIPTION: Subscription,
  EntityKind.INVOICE: Invoice,
}

READ_MODELS = {
  EntityKind.CUSTOMER: CustomerRead,
  EntityKind.PLAN: PlanRead,
  EntityKind.SUBSCRIPTION: SubscriptionRead,
  EntityKind.INVOICE: InvoiceRead,
}

DETAIL_MODELS = {
  EntityKind.CUSTOMER: CustomerDetail,
  EntityKind.PLAN: PlanDetail,
  EntityKind.SUBSCRIPTION: SubscriptionDetail,
}

FIELD_SPECS = {
  EntityKind.CUSTOMER: [
    FieldSpec("name", NonEmptyStr, required=True),
    FieldSpec("email", Email, required=True),
    FieldSpec("status", CustomerStatus, default=CustomerStatus.ACTIVE),
  ],
  EntityKind.PLAN: [
    FieldSpec("name", NonEmptyStr, required=True),
    FieldSpec("description", Optional[str]),
    FieldSpec("price", Money, required=True),
    FieldSpec("billing_interval", BillingInterval, required=True),
    FieldSpec("trial_period_days", Optional[PositiveInt]),
    FieldSpec("is_active", Flag, default=True),
  ],
  EntityKind.SUBSCRIPTION: [
    FieldSpec("customer_id", PositiveInt, required=True, mutable=False),
    FieldSpec("plan_id", PositiveInt, required=True, mutable=False),
    FieldSpec("status", SubscriptionStatus, default=SubscriptionStatus.TRIALING),
    FieldSpec("start_date", Timestamp, default=NOW, mutable=False),
    FieldSpec("current_period_start", Timestamp, default=NOW),
    FieldSpec("current_period_end", Timestamp, required=True),
    FieldSpec("cancel_at_period_end", Flag, default=False),
    FieldSpec("canceled_at", Optional[Timestamp]),
  ],
  EntityKind.INVOICE: [
    FieldSpec("subscription_id", PositiveInt, required=True, mutable=False),
    FieldSpec("customer_id", PositiveInt, required=True, mutable=False),
    FieldSpec("amount", Money, required=True),
    FieldSpec("due_date", Timestamp, required=True),
    FieldSpec("status", InvoiceStatus, default=InvoiceStatus.DRAFT),
    FieldSpec("paid_at", Optional[Timestamp]),
    FieldSpec("line_items", LineItems, required=True),
  ],
}

# Request bodies of the lifecycle actions.
CANCEL_FIELDS = [FieldSpec("cancel_at_period_end", Flag, default=True)]
PAY_FIELDS = [FieldSpec("paid_at", Optional[Timestamp])]
