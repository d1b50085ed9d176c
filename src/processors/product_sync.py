"""
Product sync processors.

sync-product pulls one product from the Shopify Admin API and pushes it
through the product reconciliation state machine; sync-all-products pages
through the whole catalogue.
"""

import logging
import time
from typing import Optional

from src.queueing.entities import JobResult
from src.queueing.errors import NotFoundError, ValidationError
from src.queueing.registry import JobContext, JobProcessor
from src.shopify import ShopifyClient
from src.store import Product
from src.webhooks.reconciliation import ReconcileAction, Reconciler, parse_payload
from src.webhooks.schemas import ProductPayload

from .common import require_choice, require_fields


logger = logging.getLogger(__name__)


SYNC_ACTIONS = ("create", "update", "delete", "full-sync")
PAGE_SIZE = 250


class SyncProductProcessor(JobProcessor):
    """
    sync-product

    Payload: {shopifyProductId, action, shopDomain?, forceSync?}. A "create"
    for a product already mirrored locally is skipped unless forceSync is set.
    """

    def __init__(self, client: ShopifyClient, reconciler: Reconciler):
        self.client = client
        self.reconciler = reconciler

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "shopifyProductId", "action")
        action = require_choice(payload, "action", SYNC_ACTIONS)
        product_id = str(payload["shopifyProductId"])
        shop_domain = payload.get("shopDomain") or self.client.store_url
        context.report_progress(25)

        if action == "delete":
            outcome = self.reconciler.reconcile_product(
                ProductPayload(id=product_id), "delete", shop_domain
            )
        elif action == "create" and not payload.get("forceSync") and self._mirrored(product_id, shop_domain):
            logger.info(f"Product {product_id} already synced; skipping")
            context.report_progress(100)
            return JobResult.ok(
                f"Product {product_id} already synced",
                data={"shopifyProductId": product_id, "action": ReconcileAction.UNCHANGED.value},
                started=started,
            )
        else:
            remote = self.client.get_product(product_id)
            if not remote:
                raise NotFoundError(
                    f"Shopify product not found: {product_id}",
                    context={"shopifyProductId": product_id},
                )
            context.report_progress(75)
            outcome = self.reconciler.reconcile_product(
                parse_payload(ProductPayload, remote), "update", shop_domain
            )

        context.report_progress(100)
        return JobResult.ok(
            f"Product {product_id} {outcome.action.value}",
            data={"shopifyProductId": product_id, "syncAction": action, **outcome.to_dict()},
            started=started,
        )

    def _mirrored(self, product_id: str, shop_domain: str) -> bool:
        return self.reconciler.store.count(
            Product, shopify_product_id=product_id, shop_domain=shop_domain
        ) > 0


class SyncAllProductsProcessor(JobProcessor):
    """sync-all-products: reconcile every product, PAGE_SIZE at a time."""

    def __init__(self, client: ShopifyClient, reconciler: Reconciler, page_size: int = PAGE_SIZE):
        self.client = client
        self.reconciler = reconciler
        self.page_size = page_size

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        shop_domain = payload.get("shopDomain") or self.client.store_url
        counts = {action.value: 0 for action in ReconcileAction}
        skipped = []

        since_id: Optional[str] = None
        pages = 0
        while True:
            products = self.client.list_products(limit=self.page_size, since_id=since_id)
            if not products:
                break
            pages += 1

            for remote in products:
                try:
                    outcome = self.reconciler.reconcile_product(
                        parse_payload(ProductPayload, remote), "update", shop_domain
                    )
                except ValidationError as e:
                    logger.warning(f"Skipping product {remote.get('id')}: {e}")
                    skipped.append(str(remote.get("id")))
                    continue
                counts[outcome.action.value] += 1

            since_id = str(products[-1]["id"])
            context.report_progress(min(95, pages * 10))
            if len(products) < self.page_size:
                break

        context.report_progress(100)
        synced = counts["created"] + counts["updated"] + counts["unchanged"]
        return JobResult.ok(
            f"Synced {synced} products",
            data={"pages": pages, "counts": counts, "skipped": skipped},
            started=started,
        )
