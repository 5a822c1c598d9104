"""FastAPI service for ZapAround subscription billing.

This package receives Stripe subscription webhooks, keeps each user's
subscription role in Postgres in step with Stripe, and serves the billing
endpoints used by the web app.
"""

__version__ = "0.1.0"
