"""
Webhook Reconciliation.

Idempotently merges Shopify entity state into the local store. Each entity
is keyed by its remote id (unique together with the shop domain):

    unknown + create/update  -> create the local row
    unknown + delete/cancel  -> no-op (reported as not_found)
    known   + create/update  -> merge; no write when nothing changed
    known   + delete         -> products/customers removed, orders cancelled

Every entity row is reconciled in its own find-then-upsert session. Order
line items and customer linkage are best-effort: a failure there is logged
and never fails the order itself, and a retry resumes where it stopped.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.queueing.errors import ValidationError
from src.store import Customer, Order, OrderItem, Product, StoreAdapter, StoreModel
from src.store.persistence import StoreSession

from .schemas import (
    PAYLOAD_MODELS,
    CustomerPayload,
    LineItemPayload,
    OrderPayload,
    ProductPayload,
)
from .topics import parse_topic


logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass
class ReconcileOutcome:
    """What one webhook did to the local store."""

    entity: str
    action: ReconcileAction
    remote_id: Optional[str] = None
    local_id: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def created(self) -> bool:
        return self.action == ReconcileAction.CREATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "action": self.action.value,
            "remoteId": self.remote_id,
            "localId": self.local_id,
            **self.details,
        }


def parse_payload(model: type[BaseModel], payload: dict) -> Any:
    """
    Validate a raw payload against its schema.

    Raises:
        ValidationError: Non-retryable, with the pydantic errors in context
    """
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__} payload",
            context={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else "0"))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _format_money(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01")))


def _drop_none(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None}


def _upsert(
    session: StoreSession,
    model: type[StoreModel],
    key: dict,
    columns: dict,
    merge_fields: tuple[str, ...] = (),
) -> tuple[ReconcileAction, StoreModel]:
    """
    Find by `key`, then create or merge `columns`.

    Fields in `merge_fields` are JSON maps merged into the stored value, so
    local-only keys survive. Columns not listed are left untouched.
    """
    existing = session.find_one(model, **key)
    if existing is None:
        return ReconcileAction.CREATED, session.create(model, **key, **columns)

    changes = {}
    for name, value in columns.items():
        current = getattr(existing, name)
        if name in merge_fields:
            value = {**(current or {}), **(value or {})}
        if current != value:
            changes[name] = value

    if not changes:
        return ReconcileAction.UNCHANGED, existing
    return ReconcileAction.UPDATED, session.update(model, existing.id, **changes)


class Reconciler:
    """Applies Shopify webhook payloads to a StoreAdapter."""

    def __init__(self, store: StoreAdapter):
        self.store = store

    def apply(self, topic: str, payload: dict, shop_domain: str) -> ReconcileOutcome:
        """
        Reconcile one webhook.

        Args:
            topic: Shopify topic, e.g. "orders/create"
            payload: Decoded webhook body
            shop_domain: Shop the webhook came from

        Returns:
            ReconcileOutcome; unsupported topics are IGNORED

        Raises:
            ValidationError: If the payload does not match the topic's schema
        """
        try:
            parsed_topic = parse_topic(topic)
        except ValueError:
            logger.info(f"Ignoring unhandled webhook topic: {topic}")
            return ReconcileOutcome(entity="unknown", action=ReconcileAction.IGNORED,
                                    details={"topic": topic})

        model = PAYLOAD_MODELS[parsed_topic.resource]
        data = parse_payload(model, payload)

        if parsed_topic.resource == "orders":
            outcome = self.reconcile_order(data, parsed_topic.event, shop_domain)
        elif parsed_topic.resource == "products":
            outcome = self.reconcile_product(data, parsed_topic.event, shop_domain)
        else:
            outcome = self.reconcile_customer(data, parsed_topic.event, shop_domain)

        logger.info(
            f"Reconciled {topic} from {shop_domain}: "
            f"{outcome.entity} {outcome.remote_id} -> {outcome.action.value}"
        )
        return outcome

    # =========================================================================
    # Orders
    # =========================================================================

    def reconcile_order(self, payload: OrderPayload, event: str, shop_domain: str) -> ReconcileOutcome:
        if event == "cancelled":
            return self.cancel_order(payload, shop_domain)

        customer_id = self.link_customer(payload, shop_domain)

        with self.store.session() as session:
            key = {"shopify_order_id": payload.id, "shop_domain": shop_domain}
            existing = session.find_one(Order, **key)
            columns = self._order_columns(payload, event, existing, customer_id)
            action, order = _upsert(session, Order, key, columns, merge_fields=("metadata",))

        item_stats = self._reconcile_line_items(order, payload.line_items, shop_domain)
        if action == ReconcileAction.UNCHANGED and (item_stats["created"] or item_stats["updated"]):
            action = ReconcileAction.UPDATED

        return ReconcileOutcome(
            entity="order",
            action=action,
            remote_id=payload.id,
            local_id=order.id,
            details={"customerId": order.customer_id, "lineItems": item_stats},
        )

    def _order_columns(
        self,
        payload: OrderPayload,
        event: str,
        existing: Optional[Order],
        customer_id: Optional[str],
    ) -> dict:
        financial_status = payload.financial_status
        fulfillment_status = payload.fulfillment_status

        if payload.cancelled_at:
            status = "cancelled"
        elif fulfillment_status == "fulfilled":
            status = "completed"
        elif financial_status == "paid":
            status = "processing"
        else:
            status = existing.status if existing else "pending"

        if event == "paid":
            financial_status, status = "paid", "processing"
        elif event == "fulfilled":
            fulfillment_status, status = "fulfilled", "completed"

        columns = {
            "order_number": payload.order_number or payload.name,
            "total_price": payload.total_price or "0.00",
            "currency": payload.currency or "USD",
            "financial_status": financial_status,
            "fulfillment_status": fulfillment_status,
            "status": status,
            "metadata": _drop_none({"name": payload.name, "email": payload.email}),
        }
        if payload.cancel_reason:
            columns["cancel_reason"] = payload.cancel_reason
        # Linkage failures keep whatever customer the order already has
        if customer_id is not None:
            columns["customer_id"] = customer_id
        return columns

    def cancel_order(self, payload: OrderPayload, shop_domain: str) -> ReconcileOutcome:
        """orders/cancelled: soft-cancel; orders are never deleted locally."""
        with self.store.session() as session:
            order = session.find_one(Order, shopify_order_id=payload.id, shop_domain=shop_domain)
            if order is None:
                logger.warning(f"Cancel for unknown order {payload.id} ({shop_domain})")
                return ReconcileOutcome(entity="order", action=ReconcileAction.NOT_FOUND,
                                        remote_id=payload.id)

            changes = {"status": "cancelled", "financial_status": "voided"}
            if payload.cancel_reason:
                changes["cancel_reason"] = payload.cancel_reason
            changes = {k: v for k, v in changes.items() if getattr(order, k) != v}

            if not changes:
                action = ReconcileAction.UNCHANGED
            else:
                order = session.update(Order, order.id, **changes)
                action = ReconcileAction.CANCELLED

        return ReconcileOutcome(entity="order", action=action, remote_id=payload.id,
                                local_id=order.id)

    def link_customer(self, payload: OrderPayload, shop_domain: str) -> Optional[str]:
        """
        Resolve the local customer for an order.

        Tries the remote customer id, then the email, then creates a customer
        (only when an email is known). Each step is attempted even if an
        earlier one failed; if all fail the order is left unlinked.
        """
        customer = payload.customer or CustomerPayload()
        email = customer.email or payload.email

        steps = []
        if customer.id:
            steps.append(("remote id", lambda: self._customer_by_remote_id(customer.id, shop_domain)))
        if email:
            steps.append(("email", lambda: self._customer_by_email(email, customer.id, shop_domain)))
            steps.append(("create", lambda: self._create_customer(customer, email, shop_domain)))

        for label, step in steps:
            try:
                customer_id = step()
            except Exception as e:
                logger.warning(f"Customer lookup by {label} failed for order {payload.id}: {e}")
                continue
            if customer_id:
                return customer_id

        logger.info(f"Order {payload.id} left without a linked customer")
        return None

    def _customer_by_remote_id(self, remote_id: str, shop_domain: str) -> Optional[str]:
        found = self.store.find_one(Customer, shopify_customer_id=remote_id, shop_domain=shop_domain)
        return found.id if found else None

    def _customer_by_email(self, email: str, remote_id: Optional[str], shop_domain: str) -> Optional[str]:
        with self.store.session() as session:
            found = session.find_one(Customer, email=email, shop_domain=shop_domain)
            if found is None:
                return None
            if remote_id and found.shopify_customer_id is None:
                session.update(Customer, found.id, shopify_customer_id=remote_id)
            return found.id

    def _create_customer(self, customer: CustomerPayload, email: str, shop_domain: str) -> str:
        columns = self._customer_columns(customer)
        columns["email"] = email
        created = self.store.create(
            Customer,
            shop_domain=shop_domain,
            shopify_customer_id=customer.id,
            **columns,
        )
        logger.info(f"Created customer {created.id} for {email}")
        return created.id

    def _reconcile_line_items(
        self,
        order: Order,
        line_items: list[LineItemPayload],
        shop_domain: str,
    ) -> dict:
        stats = {"created": 0, "updated": 0, "unchanged": 0, "failed": 0, "missingProducts": []}
        for item in line_items:
            try:
                with self.store.session() as session:
                    action, missing_product = self._upsert_line_item(session, order, item, shop_domain)
                stats[action.value] += 1
                if missing_product:
                    stats["missingProducts"].append(missing_product)
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Failed to reconcile line item {item.id} of order {order.id}: {e}")
        return stats

    def _upsert_line_item(
        self,
        session: StoreSession,
        order: Order,
        item: LineItemPayload,
        shop_domain: str,
    ) -> tuple[ReconcileAction, Optional[str]]:
        product_id = None
        if item.product_id:
            product = session.find_one(Product, shopify_product_id=item.product_id,
                                       shop_domain=shop_domain)
            product_id = product.id if product else None

        unit_price = _money(item.price)
        tax = sum((_money(line.price) for line in item.tax_lines), Decimal("0"))
        extra = item.model_extra or {}

        columns = {
            "product_id": product_id,
            "shopify_product_id": item.product_id,
            "shopify_variant_id": item.variant_id,
            "product_title": item.title or item.name or "Unknown Product",
            "product_variant_title": item.variant_title,
            "sku": item.sku,
            "quantity": item.quantity,
            "unit_price": _format_money(unit_price),
            "total_price": _format_money(unit_price * item.quantity),
            "currency": order.currency,
            "discount_amount": _format_money(_money(item.total_discount)),
            "tax_amount": _format_money(tax),
            "product_metadata": _drop_none({
                "vendor": extra.get("vendor"),
                "requires_shipping": extra.get("requires_shipping"),
                "gift_card": extra.get("gift_card"),
            }),
        }
        action, _ = _upsert(
            session,
            OrderItem,
            {"order_id": order.id, "shopify_line_item_id": item.id},
            columns,
            merge_fields=("product_metadata",),
        )
        missing_product = item.product_id if item.product_id and product_id is None else None
        return action, missing_product

    # =========================================================================
    # Products
    # =========================================================================

    def reconcile_product(self, payload: ProductPayload, event: str, shop_domain: str) -> ReconcileOutcome:
        key = {"shopify_product_id": payload.id, "shop_domain": shop_domain}

        if event == "delete":
            return self._destroy("product", Product, key, payload.id)

        if not payload.title:
            raise ValidationError("Product title is required", context={"productId": payload.id})

        columns = {
            "title": payload.title,
            "description": payload.body_html,
            "price": payload.variants[0].price if payload.variants else None,
            "status": payload.status or "active",
            "metadata": _drop_none({
                "vendor": payload.vendor,
                "product_type": payload.product_type,
                "tags": payload.tags,
            }),
        }

        with self.store.session() as session:
            action, product = _upsert(session, Product, key, columns, merge_fields=("metadata",))

        return ReconcileOutcome(entity="product", action=action, remote_id=payload.id,
                                local_id=product.id)

    # =========================================================================
    # Customers
    # =========================================================================

    def reconcile_customer(self, payload: CustomerPayload, event: str, shop_domain: str) -> ReconcileOutcome:
        key = {"shopify_customer_id": payload.id, "shop_domain": shop_domain}

        if event == "delete":
            return self._destroy("customer", Customer, key, payload.id)

        with self.store.session() as session:
            action, customer = _upsert(session, Customer, key, self._customer_columns(payload))

        return ReconcileOutcome(entity="customer", action=action, remote_id=payload.id,
                                local_id=customer.id)

    @staticmethod
    def _customer_columns(payload: CustomerPayload) -> dict:
        address = payload.default_address
        return {
            "email": payload.email,
            "first_name": payload.first_name,
            "last_name": payload.last_name,
            "phone": payload.phone or (address.phone if address else None),
            "address": address.address1 if address else None,
            "city": address.city if address else None,
            "province": address.province if address else None,
            "country": address.country if address else None,
            "zip": address.zip if address else None,
        }

    def _destroy(self, entity: str, model: type[StoreModel], key: dict, remote_id: str) -> ReconcileOutcome:
        with self.store.session() as session:
            existing = session.find_one(model, **key)
            if existing is None:
                logger.info(f"Delete for unknown {entity} {remote_id}; nothing to do")
                return ReconcileOutcome(entity=entity, action=ReconcileAction.NOT_FOUND,
                                        remote_id=remote_id)
            session.destroy(model, existing.id)

        return ReconcileOutcome(entity=entity, action=ReconcileAction.DELETED,
                                remote_id=remote_id, local_id=existing.id)
