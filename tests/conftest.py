"""Shared pytest configuration.

Settings are read from ZAPAROUND_ environment variables when first requested,
so test values are set here, before any application module is imported.
"""

import os

import pytest

os.environ.setdefault("ZAPAROUND_ENVIRONMENT", "development")
os.environ.setdefault("ZAPAROUND_STRIPE_SECRET_KEY", "sk_test_placeholder")
os.environ.setdefault("ZAPAROUND_STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault(
    "ZAPAROUND_SUPABASE_JWT_SECRET", "test-supabase-jwt-secret-with-at-least-32-chars"
)
os.environ.setdefault("ZAPAROUND_LOG_FORMAT", "text")
os.environ.pop("ZAPAROUND_RESEND_API_KEY", None)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    from api.src.config import clear_settings_cache
    from shared.logging import clear_context

    clear_settings_cache()
    yield
    clear_settings_cache()
    clear_context()
