"""
Reconciliation Tests.

Idempotency is the core property: applying the same webhook twice leaves
the store exactly as applying it once.
"""

from unittest.mock import patch

import pytest

from src.queueing.errors import ValidationError
from src.store import Customer, Order, OrderItem, Product
from src.webhooks import ReconcileAction

from .conftest import SHOP, customer_payload, order_payload, product_payload


ORDER_ID = "820982911946154508"


# =============================================================================
# Orders
# =============================================================================


class TestOrderCreate:

    def test_new_order_creates_rows(self, reconciler, store):
        # Action
        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        # Assertion: order row
        assert outcome.action == ReconcileAction.CREATED
        assert outcome.entity == "order"
        assert outcome.remote_id == ORDER_ID
        order = store.get(Order, outcome.local_id)
        assert order.shopify_order_id == ORDER_ID
        assert order.shop_domain == SHOP
        assert order.order_number == "1001"
        assert order.total_price == "59.98"
        assert order.status == "pending"
        assert order.metadata == {"name": "#1001", "email": "jon@example.com"}

        # Assertion: customer created and linked
        customer = store.get(Customer, order.customer_id)
        assert customer.email == "jon@example.com"
        assert customer.shopify_customer_id == "115310627314723954"
        assert outcome.details["customerId"] == customer.id

    def test_line_item_amounts(self, reconciler, store):
        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        (item,) = store.find_all(OrderItem, order_id=outcome.local_id)
        assert item.shopify_line_item_id == "866550311766439020"
        assert item.product_title == "IPod Nano - 8GB"
        assert item.quantity == 2
        assert item.unit_price == "29.99"
        assert item.total_price == "59.98"
        assert item.tax_amount == "3.00"
        assert item.product_metadata == {"vendor": "Apple"}

    def test_unmirrored_product_is_reported(self, reconciler, store):
        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.details["lineItems"]["missingProducts"] == ["632910392"]
        (item,) = store.find_all(OrderItem, order_id=outcome.local_id)
        assert item.product_id is None
        assert item.shopify_product_id == "632910392"

    def test_mirrored_product_is_linked(self, reconciler, store):
        product = reconciler.apply("products/create", product_payload(), SHOP)

        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.details["lineItems"]["missingProducts"] == []
        (item,) = store.find_all(OrderItem, order_id=outcome.local_id)
        assert item.product_id == product.local_id

    def test_line_item_without_title_falls_back(self, reconciler, store):
        payload = order_payload(line_items=[{"id": 1, "quantity": 1, "price": "5.00"}])

        outcome = reconciler.apply("orders/create", payload, SHOP)

        (item,) = store.find_all(OrderItem, order_id=outcome.local_id)
        assert item.product_title == "Unknown Product"


class TestOrderIdempotency:

    def test_replay_leaves_store_unchanged(self, reconciler, store):
        """
        The same orders/create delivered twice: one order, one customer,
        one line item; the second pass reports unchanged.
        """
        # Setup
        first = reconciler.apply("orders/create", order_payload(), SHOP)
        order_before = store.get(Order, first.local_id)

        # Action
        second = reconciler.apply("orders/create", order_payload(), SHOP)

        # Assertion
        assert second.action == ReconcileAction.UNCHANGED
        assert second.local_id == first.local_id
        assert store.count(Order) == 1
        assert store.count(Customer) == 1
        assert store.count(OrderItem) == 1
        assert store.get(Order, first.local_id).updated_at == order_before.updated_at
        assert second.details["lineItems"]["unchanged"] == 1

    def test_update_merges_changes(self, reconciler, store):
        first = reconciler.apply("orders/create", order_payload(), SHOP)
        store.update(Order, first.local_id, metadata={"name": "#1001", "email": "jon@example.com", "note": "gift"})

        outcome = reconciler.apply(
            "orders/updated", order_payload(total_price="64.98", email="jon@new.example.com"), SHOP
        )

        assert outcome.action == ReconcileAction.UPDATED
        order = store.get(Order, first.local_id)
        assert order.total_price == "64.98"
        assert order.metadata == {"name": "#1001", "email": "jon@new.example.com", "note": "gift"}

    def test_line_item_change_marks_order_updated(self, reconciler, store):
        reconciler.apply("orders/create", order_payload(), SHOP)
        payload = order_payload()
        payload["line_items"][0]["quantity"] = 3

        outcome = reconciler.apply("orders/updated", payload, SHOP)

        assert outcome.action == ReconcileAction.UPDATED
        assert outcome.details["lineItems"]["updated"] == 1
        (item,) = store.find_all(OrderItem, order_id=outcome.local_id)
        assert item.quantity == 3
        assert item.total_price == "89.97"

    def test_update_for_unknown_order_creates_it(self, reconciler, store):
        outcome = reconciler.apply("orders/updated", order_payload(), SHOP)

        assert outcome.action == ReconcileAction.CREATED
        assert store.count(Order) == 1

    def test_same_remote_id_in_two_shops(self, reconciler, store):
        reconciler.apply("orders/create", order_payload(), SHOP)
        reconciler.apply("orders/create", order_payload(), "other.myshopify.com")

        assert store.count(Order) == 2


class TestOrderStatus:

    def test_paid_event(self, reconciler, store):
        reconciler.apply("orders/create", order_payload(), SHOP)

        outcome = reconciler.apply("orders/paid", order_payload(), SHOP)

        order = store.get(Order, outcome.local_id)
        assert order.financial_status == "paid"
        assert order.status == "processing"

    def test_fulfilled_event(self, reconciler, store):
        outcome = reconciler.apply(
            "orders/fulfilled", order_payload(financial_status="paid"), SHOP
        )

        order = store.get(Order, outcome.local_id)
        assert order.fulfillment_status == "fulfilled"
        assert order.status == "completed"

    def test_status_from_payload_fields(self, reconciler, store):
        outcome = reconciler.apply("orders/create", order_payload(financial_status="paid"), SHOP)

        assert store.get(Order, outcome.local_id).status == "processing"

    def test_cancel_known_order(self, reconciler, store):
        created = reconciler.apply("orders/create", order_payload(), SHOP)

        outcome = reconciler.apply("orders/cancelled", order_payload(cancel_reason="customer"), SHOP)

        assert outcome.action == ReconcileAction.CANCELLED
        order = store.get(Order, created.local_id)
        assert order.status == "cancelled"
        assert order.financial_status == "voided"
        assert order.cancel_reason == "customer"

    def test_cancel_is_idempotent(self, reconciler, store):
        reconciler.apply("orders/create", order_payload(), SHOP)
        reconciler.apply("orders/cancelled", order_payload(cancel_reason="customer"), SHOP)

        again = reconciler.apply("orders/cancelled", order_payload(cancel_reason="customer"), SHOP)

        assert again.action == ReconcileAction.UNCHANGED
        assert store.count(Order) == 1

    def test_cancel_unknown_order_is_not_found(self, reconciler, store):
        outcome = reconciler.apply("orders/cancelled", order_payload(), SHOP)

        assert outcome.action == ReconcileAction.NOT_FOUND
        assert store.count(Order) == 0


class TestCustomerLinkage:

    def test_links_existing_customer_by_remote_id(self, reconciler, store):
        existing = store.create(
            Customer, shop_domain=SHOP, shopify_customer_id="115310627314723954", email="old@example.com"
        )

        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.details["customerId"] == existing.id
        assert store.count(Customer) == 1

    def test_links_by_email_and_backfills_remote_id(self, reconciler, store):
        existing = store.create(Customer, shop_domain=SHOP, email="jon@example.com")

        outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.details["customerId"] == existing.id
        assert store.get(Customer, existing.id).shopify_customer_id == "115310627314723954"

    def test_guest_order_without_email_is_unlinked(self, reconciler, store):
        outcome = reconciler.apply("orders/create", order_payload(customer=None, email=None), SHOP)

        assert outcome.action == ReconcileAction.CREATED
        assert outcome.details["customerId"] is None
        assert store.count(Customer) == 0

    def test_linkage_failure_does_not_fail_order(self, reconciler, store):
        with patch.object(reconciler, "_create_customer", side_effect=RuntimeError("disk full")):
            outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.action == ReconcileAction.CREATED
        assert store.get(Order, outcome.local_id).customer_id is None

    def test_line_item_failure_is_counted(self, reconciler, store):
        with patch.object(reconciler, "_upsert_line_item", side_effect=RuntimeError("locked")):
            outcome = reconciler.apply("orders/create", order_payload(), SHOP)

        assert outcome.action == ReconcileAction.CREATED
        assert outcome.details["lineItems"]["failed"] == 1
        assert store.count(OrderItem) == 0


# =============================================================================
# Products
# =============================================================================


class TestProducts:

    def test_create_product(self, reconciler, store):
        outcome = reconciler.apply("products/create", product_payload(), SHOP)

        assert outcome.action == ReconcileAction.CREATED
        product = store.get(Product, outcome.local_id)
        assert product.title == "IPod Nano - 8GB"
        assert product.price == "199.00"
        assert product.status == "active"
        assert product.description.startswith("<p>")
        assert product.metadata == {
            "vendor": "Apple",
            "product_type": "Cult Products",
            "tags": "Emotive, Flash Memory",
        }

    def test_create_for_known_product_is_unchanged(self, reconciler, store):
        reconciler.apply("products/create", product_payload(), SHOP)

        outcome = reconciler.apply("products/create", product_payload(), SHOP)

        assert outcome.action == ReconcileAction.UNCHANGED
        assert store.count(Product) == 1

    def test_update_product(self, reconciler, store):
        created = reconciler.apply("products/create", product_payload(), SHOP)

        outcome = reconciler.apply(
            "products/update", product_payload(title="IPod Nano - 16GB", status="draft"), SHOP
        )

        assert outcome.action == ReconcileAction.UPDATED
        product = store.get(Product, created.local_id)
        assert product.title == "IPod Nano - 16GB"
        assert product.status == "draft"

    def test_product_without_title_rejected(self, reconciler):
        with pytest.raises(ValidationError):
            reconciler.apply("products/create", product_payload(title=None), SHOP)

    def test_delete_product(self, reconciler, store):
        reconciler.apply("products/create", product_payload(), SHOP)

        outcome = reconciler.apply("products/delete", {"id": 632910392}, SHOP)

        assert outcome.action == ReconcileAction.DELETED
        assert store.count(Product) == 0

    def test_delete_unknown_product(self, reconciler):
        outcome = reconciler.apply("products/delete", {"id": 1}, SHOP)

        assert outcome.action == ReconcileAction.NOT_FOUND

    def test_deleting_product_unlinks_order_items(self, reconciler, store):
        reconciler.apply("products/create", product_payload(), SHOP)
        order = reconciler.apply("orders/create", order_payload(), SHOP)

        reconciler.apply("products/delete", {"id": 632910392}, SHOP)

        (item,) = store.find_all(OrderItem, order_id=order.local_id)
        assert item.product_id is None
        assert item.shopify_product_id == "632910392"


# =============================================================================
# Customers
# =============================================================================


class TestCustomers:

    def test_create_customer_with_address(self, reconciler, store):
        outcome = reconciler.apply("customers/create", customer_payload(), SHOP)

        customer = store.get(Customer, outcome.local_id)
        assert customer.shopify_customer_id == "207119551"
        assert customer.city == "Louisville"
        assert customer.address == "Chestnut Street 92"
        assert customer.phone == "555-625-1199"

    def test_update_customer(self, reconciler, store):
        created = reconciler.apply("customers/create", customer_payload(), SHOP)

        outcome = reconciler.apply("customers/update", customer_payload(last_name="Normal"), SHOP)

        assert outcome.action == ReconcileAction.UPDATED
        assert store.get(Customer, created.local_id).last_name == "Normal"

    def test_delete_customer_keeps_orders(self, reconciler, store):
        order = reconciler.apply("orders/create", order_payload(), SHOP)

        outcome = reconciler.apply("customers/delete", {"id": 115310627314723954}, SHOP)

        assert outcome.action == ReconcileAction.DELETED
        remaining = store.get(Order, order.local_id)
        assert remaining is not None
        assert remaining.customer_id is None


# =============================================================================
# Dispatch
# =============================================================================


class TestApply:

    def test_unsupported_topic_ignored(self, reconciler, store):
        outcome = reconciler.apply("carts/update", {"id": 1}, SHOP)

        assert outcome.action == ReconcileAction.IGNORED
        assert outcome.to_dict()["topic"] == "carts/update"

    def test_invalid_payload_is_validation_error(self, reconciler):
        with pytest.raises(ValidationError) as exc_info:
            reconciler.apply("orders/create", {"email": "no-id@example.com"}, SHOP)

        assert exc_info.value.retryable is False
        assert exc_info.value.context["errors"]

    def test_outcome_to_dict(self, reconciler):
        outcome = reconciler.apply("customers/create", customer_payload(), SHOP)

        data = outcome.to_dict()
        assert data["entity"] == "customer"
        assert data["action"] == "created"
        assert data["remoteId"] == "207119551"
        assert data["localId"] == outcome.local_id
