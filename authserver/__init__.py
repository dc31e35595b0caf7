"""Top-level package for the OAuth 2.0 authorization server FastAPI application."""

__all__ = [
    "APP_ENV",
    "STORE_BACKEND",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SESSION_SECRET",
]

from dotenv import load_dotenv
import os
import secrets
load_dotenv()

APP_ENV = os.getenv("APP_ENV", "production")

# Persistence backend for clients, principals and issued credentials
STORE_BACKEND = os.getenv("STORE_BACKEND", "supabase").lower()

if STORE_BACKEND not in {"supabase", "memory"}:
    raise RuntimeError(f"Unsupported STORE_BACKEND: {STORE_BACKEND}")

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY")

if STORE_BACKEND == "supabase" and (not SUPABASE_URL or not SUPABASE_KEY):
    raise RuntimeError("Supabase env vars not configured")

# Signing key for the login-session and delegated-login state cookies
SESSION_SECRET = os.environ.get("SESSION_SECRET")

if not SESSION_SECRET:
    if APP_ENV != "development":
        raise RuntimeError("SESSION_SECRET not configured")
    # Sessions will not survive a restart in development
    SESSION_SECRET = secrets.token_urlsafe(32)
