import logging
from datetime import timedelta

import pytest
from sqlalchemy import DateTime

from conftest import NOW, invoice_payload, iso
from errors import ConflictError, ConflictKind, NotFoundError, ReferentialError, ValidationError
from models import Customer, EntityKind, Invoice, InvoiceStatus, Plan, Subscription, SubscriptionStatus



class TestInvoices:

  def test_amount_equals_line_item_totals(self, service, invoice):
    assert invoice.amount == 1250
    assert [(i.quantity, i.unit_price, i.total) for i in invoice.line_items] == [(2, 500, 1000), (1, 250, 250)]
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.paid_at is None

  def test_read_after_create_matches(self, service, invoice):
    assert service.get(EntityKind.INVOICE, invoice.id) == invoice

  def test_unit_price_change_without_totals_fails(self, service, invoice):
    items = [item.model_dump(by_alias=True) for item in invoice.line_items]
    items[0]["unitPrice"] = 600
    with pytest.raises(ValidationError) as exc_info:
      service.update(EntityKind.INVOICE, invoice.id, {"lineItems": items})
    assert [e.path for e in exc_info.value.errors] == ["lineItems.0.total"]
    assert service.get(EntityKind.INVOICE, invoice.id).line_items == invoice.line_items

  def test_consistent_line_item_update(self, service, clock, invoice):
    clock.advance(minutes=5)
    items = [{"description": "Seats", "quantity": 3, "unitPrice": 500, "total": 1500}]
    updated = service.update(EntityKind.INVOICE, invoice.id, {"lineItems": items, "amount": 1500})
    assert updated.amount == 1500
    assert updated.updated_at == NOW + timedelta(minutes=5)
    assert updated.created_at == invoice.created_at
    assert service.get(EntityKind.INVOICE, invoice.id) == updated

  def test_paid_status_needs_paid_at(self, service, invoice):
    with pytest.raises(ValidationError):
      service.update(EntityKind.INVOICE, invoice.id, {"status": "PAID"})

  def test_pay_defaults_paid_at_to_now(self, service, invoice):
    paid = service.pay_invoice(invoice.id)
    assert paid.status == InvoiceStatus.PAID
    assert paid.paid_at == NOW

  def test_pay_with_future_paid_at_fails(self, service, invoice):
    with pytest.raises(ValidationError):
      service.pay_invoice(invoice.id, {"paidAt": iso(NOW + timedelta(hours=1))})
    assert service.get(EntityKind.INVOICE, invoice.id).status == InvoiceStatus.DRAFT

  def test_paying_twice_conflicts(self, service, invoice):
    service.pay_invoice(invoice.id, {"paidAt": iso(NOW - timedelta(hours=1))})
    with pytest.raises(ConflictError) as exc_info:
      service.pay_invoice(invoice.id)
    assert exc_info.value.kind is ConflictKind.ALREADY_TERMINAL
    assert service.get(EntityKind.INVOICE, invoice.id).paid_at == NOW - timedelta(hours=1)

  def test_paid_invoice_cannot_be_deleted(self, service, invoice):
    service.pay_invoice(invoice.id)
    with pytest.raises(ConflictError):
      service.delete(EntityKind.INVOICE, invoice.id)
    assert service.get(EntityKind.INVOICE, invoice.id).status == InvoiceStatus.PAID

  def test_draft_invoice_can_be_deleted(self, service, invoice):
    service.delete(EntityKind.INVOICE, invoice.id)
    with pytest.raises(NotFoundError):
      service.get(EntityKind.INVOICE, invoice.id)

  def test_paid_invoice_cannot_reopen(self, service, invoice):
    service.pay_invoice(invoice.id)
    with pytest.raises(ConflictError) as exc_info:
      service.update(EntityKind.INVOICE, invoice.id, {"status": "OPEN"})
    assert exc_info.value.kind is ConflictKind.ALREADY_TERMINAL
    assert service.get(EntityKind.INVOICE, invoice.id).status == InvoiceStatus.PAID

  def test_unknown_status_is_a_validation_error(self, service, invoice):
    with pytest.raises(ValidationError) as exc_info:
      service.update(EntityKind.INVOICE, invoice.id, {"status": "REFUNDED"})
    assert [e.path for e in exc_info.value.errors] == ["status"]

  def test_illegal_status_move(self, service, invoice):
    service.update(EntityKind.INVOICE, invoice.id, {"status": "OPEN"})
    with pytest.raises(ConflictError) as exc_info:
      service.update(EntityKind.INVOICE, invoice.id, {"status": "DRAFT"})
    assert exc_info.value.kind is ConflictKind.ILLEGAL_TRANSITION

  def test_customer_must_own_subscription(self, service, subscription):
    other = service.create(EntityKind.CUSTOMER, {"name": "BlueSky Logistics", "email": "ap@bluesky.example"})
    with pytest.raises(ValidationError) as exc_info:
      service.create(EntityKind.INVOICE, invoice_payload(subscription, customerId=other.id))
    assert [e.path for e in exc_info.value.errors] == ["customerId"]

  def test_dangling_subscription(self, service, subscription):
    with pytest.raises(ReferentialError) as exc_info:
      service.create(EntityKind.INVOICE, invoice_payload(subscription, subscriptionId=999))
    assert exc_info.value.field == "subscriptionId"


class TestSubscriptions:

  def test_defaults_on_create(self, service, customer, plan):
    sub = service.create(EntityKind.SUBSCRIPTION, {
      "customerId": customer.id, "planId": plan.id, "currentPeriodEnd": iso(NOW + timedelta(days=30)),
    })
    assert sub.status == SubscriptionStatus.TRIALING
    assert sub.start_date == NOW
    assert sub.current_period_start == NOW
    assert sub.cancel_at_period_end is False
    assert sub.canceled_at is None
    assert service.get(EntityKind.SUBSCRIPTION, sub.id) == sub

  def test_period_end_in_the_past_fails(self, service, customer, plan):
    with pytest.raises(ValidationError):
      service.create(EntityKind.SUBSCRIPTION, {
        "customerId": customer.id, "planId": plan.id, "currentPeriodEnd": iso(NOW - timedelta(days=1)),
      })
    assert service.list(EntityKind.SUBSCRIPTION) == []

  def test_dangling_plan(self, service, customer):
    with pytest.raises(ReferentialError) as exc_info:
      service.create(EntityKind.SUBSCRIPTION, {
        "customerId": customer.id, "planId": 404, "currentPeriodEnd": iso(NOW + timedelta(days=30)),
      })
    assert exc_info.value.field == "planId"

  def test_immediate_cancel(self, service, subscription):
    cancelled = service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": False})
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.canceled_at == NOW
    assert cancelled.cancel_at_period_end is False

  def test_period_end_cancel(self, service, subscription):
    pending = service.cancel_subscription(subscription.id)
    assert pending.status == SubscriptionStatus.ACTIVE
    assert pending.cancel_at_period_end is True
    assert pending.canceled_at is None

  def test_pending_cancellations_after_period_end(self, service, clock, subscription):
    service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": True})
    assert service.pending_cancellations() == []

    clock.advance(days=31)
    due = service.pending_cancellations()
    assert [s.id for s in due] == [subscription.id]
    assert due[0].status == SubscriptionStatus.ACTIVE

  def test_external_job_applies_backdated_cancellation(self, service, clock, subscription):
    service.cancel_subscription(subscription.id)
    clock.advance(days=32)
    done = service.update(EntityKind.SUBSCRIPTION, subscription.id, {
      "status": "CANCELLED", "canceledAt": iso(subscription.current_period_end),
    })
    assert done.canceled_at == subscription.current_period_end
    assert done.cancel_at_period_end is False
    assert service.pending_cancellations() == []

  def test_cancelled_subscription_cannot_reactivate(self, service, subscription):
    service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": False})
    with pytest.raises(ConflictError) as exc_info:
      service.update(EntityKind.SUBSCRIPTION, subscription.id, {"status": "ACTIVE"})
    assert exc_info.value.kind is ConflictKind.ALREADY_TERMINAL
    assert service.get(EntityKind.SUBSCRIPTION, subscription.id).status == SubscriptionStatus.CANCELLED

  def test_detail_embeds_invoices(self, service, subscription, invoice):
    detail = service.detail(EntityKind.SUBSCRIPTION, subscription.id)
    assert detail.id == subscription.id
    assert detail.invoices == [invoice]

  def test_trial_cannot_skip_to_past_due(self, service, customer, plan):
    sub = service.create(EntityKind.SUBSCRIPTION, {
      "customerId": customer.id, "planId": plan.id, "currentPeriodEnd": iso(NOW + timedelta(days=14)),
    })
    with pytest.raises(ConflictError) as exc_info:
      service.update(EntityKind.SUBSCRIPTION, sub.id, {"status": "PAST_DUE"})
    assert exc_info.value.kind is ConflictKind.ILLEGAL_TRANSITION

  def test_delete_cascades_to_invoices(self, service, subscription, invoice):
    service.delete(EntityKind.SUBSCRIPTION, subscription.id)
    with pytest.raises(NotFoundError):
      service.get(EntityKind.INVOICE, invoice.id)


class TestPlans:

  def test_delete_blocked_by_active_subscription(self, service, plan, subscription):
    with pytest.raises(ConflictError) as exc_info:
      service.delete(EntityKind.PLAN, plan.id)
    assert exc_info.value.kind is ConflictKind.REFERENCED_BY_ACTIVE_CHILDREN

    service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": False})
    service.delete(EntityKind.PLAN, plan.id)
    with pytest.raises(NotFoundError):
      service.get(EntityKind.PLAN, plan.id)
    with pytest.raises(NotFoundError):
      service.get(EntityKind.SUBSCRIPTION, subscription.id)

  def test_soft_disable(self, service, plan, subscription):
    updated = service.update(EntityKind.PLAN, plan.id, {"isActive": False})
    assert updated.is_active is False
    assert updated.name == plan.name

  def test_delete_removes_paid_invoices_of_cancelled_subscriptions(self, service, caplog, plan, subscription, invoice):
    service.pay_invoice(invoice.id)
    service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": False})

    with caplog.at_level(logging.WARNING, logger="gateway"):
      service.delete(EntityKind.PLAN, plan.id)

    with pytest.raises(NotFoundError):
      service.get(EntityKind.INVOICE, invoice.id)
    assert "removes 1 paid invoice(s)" in caplog.text

  def test_detail_embeds_subscriptions(self, service, plan, subscription):
    detail = service.detail(EntityKind.PLAN, plan.id)
    assert [s.id for s in detail.subscriptions] == [subscription.id]

  def test_duplicate_name(self, service, plan):
    other = service.create(EntityKind.PLAN, {"name": "Starter", "price": 1999, "billingInterval": "MONTHLY"})
    with pytest.raises(ConflictError) as exc_info:
      service.update(EntityKind.PLAN, other.id, {"name": plan.name})
    assert exc_info.value.kind is ConflictKind.DUPLICATE_UNIQUE
    # renaming to its own name is not a conflict
    assert service.update(EntityKind.PLAN, plan.id, {"name": plan.name}).name == plan.name


class TestCustomers:

  def test_duplicate_email(self, service, customer):
    with pytest.raises(ConflictError) as exc_info:
      service.create(EntityKind.CUSTOMER, {"name": "Apex Clone", "email": customer.email})
    assert exc_info.value.kind is ConflictKind.DUPLICATE_UNIQUE

  def test_partial_update_keeps_other_fields(self, service, customer):
    updated = service.update(EntityKind.CUSTOMER, customer.id, {"status": "CANCELLED"})
    assert updated.status.value == "CANCELLED"
    assert updated.email == customer.email
    assert updated.name == customer.name

  def test_empty_update_is_a_no_op(self, service, customer):
    assert service.update(EntityKind.CUSTOMER, customer.id, {}) == customer

  def test_missing_customer(self, service):
    with pytest.raises(NotFoundError):
      service.update(EntityKind.CUSTOMER, 12345, {"name": "Ghost"})

  def test_delete_cascades(self, service, customer, subscription, invoice):
    service.delete(EntityKind.CUSTOMER, customer.id)
    assert service.list(EntityKind.SUBSCRIPTION) == []
    assert service.list(EntityKind.INVOICE) == []

  def test_list_newest_first(self, service, clock):
    first = service.create(EntityKind.CUSTOMER, {"name": "Orchid Education", "email": "a@orchid.example"})
    clock.advance(seconds=1)
    second = service.create(EntityKind.CUSTOMER, {"name": "Nimbus Clinics", "email": "a@nimbus.example"})
    third = service.create(EntityKind.CUSTOMER, {"name": "Kite Labs", "email": "a@kite.example"})
    assert [c.id for c in service.list(EntityKind.CUSTOMER)] == [third.id, second.id, first.id]

  def test_detail_embeds_subscriptions_and_invoices(self, service, customer, subscription, invoice):
    detail = service.detail(EntityKind.CUSTOMER, customer.id)
    assert detail.email == customer.email
    assert detail.subscriptions == [subscription]
    assert detail.invoices == [invoice]

  def test_detail_of_missing_customer(self, service):
    with pytest.raises(NotFoundError):
      service.detail(EntityKind.CUSTOMER, 12345)


class TestStorage:

  @pytest.mark.parametrize("table, column", [
    (Customer, "created_at"),
    (Plan, "updated_at"),
    (Subscription, "current_period_end"),
    (Subscription, "canceled_at"),
    (Invoice, "due_date"),
    (Invoice, "paid_at"),
  ])
  def test_timestamp_columns_are_plain_naive_datetimes(self, table, column):
    column_type = table.__table__.c[column].type
    assert type(column_type) is DateTime
    assert column_type.timezone is False

  def test_naive_timestamps_round_trip(self, service, subscription):
    cancelled = service.cancel_subscription(subscription.id, {"cancelAtPeriodEnd": False})
    stored = service.get(EntityKind.SUBSCRIPTION, subscription.id)
    assert stored.canceled_at == NOW
    assert stored.canceled_at.tzinfo is None
    assert stored == cancelled
