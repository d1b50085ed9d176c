"""
API Routers package.
"""

from . import queues, webhooks

__all__ = ["queues", "webhooks"]
