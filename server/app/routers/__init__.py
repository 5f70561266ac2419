"""API routers for the chapter dues service."""

from app.routers import dues, installments, payment_intents  # noqa: F401
