"""
                Food Ordering Engine

Order, coupon and payment consistency engine for a food-ordering
backend: concurrency-safe coupon limits, idempotent Paystack webhooks,
at-most-once settlement per order and best-effort receipts, with a
hybrid Mock/Real service architecture.

Version: 1.0.0
"""

__version__ = "1.0.0"
