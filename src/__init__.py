"""
Shopify job queue and webhook reconciliation service.
"""

__version__ = "1.0.0"
