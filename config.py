"""
Application configuration, read from the environment once at import time.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", str(60 * 24)))

PIN_EXPIRES_MINUTES = int(os.getenv("PIN_EXPIRES_MINUTES", "5"))

RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
PIN_SENDER_EMAIL = os.getenv("PIN_SENDER_EMAIL", "no-reply@storefront.local")

ADMIN_EMAILS = frozenset(
    e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()
)

# Order statuses whose cancellation gives the reserved stock back
CANCEL_RELEASE_STATUSES = frozenset(
    s.strip() for s in os.getenv("CANCEL_RELEASE_STATUSES", "pending").split(",") if s.strip()
)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
