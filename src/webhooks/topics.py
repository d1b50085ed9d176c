"""
Supported Shopify webhook topics.

A topic is "<resource>/<event>", e.g. "orders/create". Each resource maps to
one reconciled entity.
"""

from typing import NamedTuple


ORDER_EVENTS = ("create", "updated", "cancelled", "paid", "fulfilled")
PRODUCT_EVENTS = ("create", "update", "delete")
CUSTOMER_EVENTS = ("create", "update", "delete")

RESOURCE_ENTITIES = {
    "orders": "order",
    "products": "product",
    "customers": "customer",
}

SUPPORTED_TOPICS = frozenset(
    [f"orders/{event}" for event in ORDER_EVENTS]
    + [f"products/{event}" for event in PRODUCT_EVENTS]
    + [f"customers/{event}" for event in CUSTOMER_EVENTS]
)


class Topic(NamedTuple):
    resource: str
    event: str

    @property
    def entity(self) -> str:
        return RESOURCE_ENTITIES[self.resource]

    def __str__(self) -> str:
        return f"{self.resource}/{self.event}"


def is_supported(topic: str) -> bool:
    return topic in SUPPORTED_TOPICS


def parse_topic(topic: str) -> Topic:
    """
    Split a supported topic into resource and event.

    Raises:
        ValueError: If the topic is not supported
    """
    if not is_supported(topic):
        raise ValueError(f"Unsupported webhook topic: {topic}")
    resource, event = topic.split("/", 1)
    return Topic(resource, event)
