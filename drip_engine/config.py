"""Drip engine configuration — loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(REPO_ROOT / ".env")

# Built-in sequence catalog (YAML) and notification templates
CATALOG_DIR = Path(__file__).resolve().parent / "sequences"
EMAIL_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"

# Supabase
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")

# Resend (notification dispatch)
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
NOTIFY_FROM_EMAIL = os.environ.get("NOTIFY_FROM_EMAIL", "hello@example.com")
NOTIFY_FROM_NAME = os.environ.get("NOTIFY_FROM_NAME", "Drip Engine")

# Webhook secret (event ingestion auth)
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")

# Server
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# Scheduling
DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")

# Event log retention (2 years)
EVENT_RETENTION_DAYS = int(os.environ.get("EVENT_RETENTION_DAYS", "730"))
PURGE_INTERVAL_HOURS = int(os.environ.get("PURGE_INTERVAL_HOURS", "24"))

# Streak rule
STREAK_WINDOW_HOURS = float(os.environ.get("STREAK_WINDOW_HOURS", "48"))
STREAK_MIN_GAP_HOURS = float(os.environ.get("STREAK_MIN_GAP_HOURS", "24"))

# Points awarded per event type when a sequence doesn't override them
DEFAULT_POINTS = {
    "start": int(os.environ.get("POINTS_START", "0")),
    "complete": int(os.environ.get("POINTS_COMPLETE", "10")),
}
DEFAULT_COMPLETION_BONUS = int(os.environ.get("POINTS_COMPLETION_BONUS", "5"))

# Optimistic concurrency on participant writes
CAS_MAX_RETRIES = int(os.environ.get("CAS_MAX_RETRIES", "5"))

# Analytics
ANALYTICS_TIMEOUT_SECONDS = float(os.environ.get("ANALYTICS_TIMEOUT_SECONDS", "10"))
ANALYTICS_DEFAULT_DAYS = int(os.environ.get("ANALYTICS_DEFAULT_DAYS", "30"))
