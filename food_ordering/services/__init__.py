"""
                        Services Module

Contains all business logic services with the hybrid architecture pattern.
External integrations have Mock (development) and Real (production)
implementations.

Services:
    - orders: order assembly and lifecycle
    - order_state: allowed status transitions
    - coupons: discount rules and atomic redemption reservation
    - payment: Paystack gateway client
    - settlement: initialize / verify / webhook / saved-card flows
    - webhook_guard: at-most-once webhook processing
    - cards: saved card authorizations
    - receipts: receipt rendering and dispatch
    - notifications: SendGrid e-mail delivery
    - throttle: per-client request limits
"""
