"""Process-wide configuration read from the environment (and a local .env)."""
from __future__ import annotations
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Remote PIMS
PIMS_BASE_URL = os.getenv("PIMS_BASE_URL", "https://us.idexxneo.com").rstrip("/")
PIMS_LOGIN_PATH = os.getenv("PIMS_LOGIN_PATH", "/login")
PIMS_PROVIDER_NAME = os.getenv("PIMS_PROVIDER_NAME", "idexx")
PIMS_USERNAME = os.getenv("PIMS_USERNAME")
PIMS_PASSWORD = os.getenv("PIMS_PASSWORD")
PIMS_SESSION_COOKIE = os.getenv("PIMS_SESSION_COOKIE", "PHPSESSID")
# the remote system drops sessions after 8 hours
PIMS_SESSION_TTL_SECONDS = int(os.getenv("PIMS_SESSION_TTL_SECONDS", "28800"))
PIMS_HEADLESS = _flag("PIMS_HEADLESS", "1")

# Browser pool
POOL_MAX_BROWSERS = int(os.getenv("POOL_MAX_BROWSERS", "2"))
POOL_MAX_CONTEXTS_PER_BROWSER = int(os.getenv("POOL_MAX_CONTEXTS_PER_BROWSER", "3"))
POOL_DEFAULT_TIMEOUT = float(os.getenv("POOL_DEFAULT_TIMEOUT", "30"))
POOL_ACQUIRE_TIMEOUT = float(os.getenv("POOL_ACQUIRE_TIMEOUT", "30"))
POOL_IDLE_TIMEOUT = float(os.getenv("POOL_IDLE_TIMEOUT", "300"))

# Consultation fetches
CONSULTATION_BATCH_SIZE = int(os.getenv("CONSULTATION_BATCH_SIZE", "2"))
CONSULTATION_REQUEST_DELAY = float(os.getenv("CONSULTATION_REQUEST_DELAY", "0.2"))

CLINIC_ID = os.getenv("CLINIC_ID", "default")

# AI generation + background jobs
AI_SERVICE_URL = os.getenv("AI_SERVICE_URL", "http://localhost:8100")
AI_SERVICE_TOKEN = os.getenv("AI_SERVICE_TOKEN", "")
AI_BACKGROUND_MODE = _flag("AI_BACKGROUND_MODE")
JOB_QUEUE_URL = os.getenv("JOB_QUEUE_URL", "http://localhost:8200/batch")
JOB_QUEUE_TOKEN = os.getenv("JOB_QUEUE_TOKEN", "")

# HTTP trigger
SYNC_API_KEY = os.getenv("SYNC_API_KEY", "")
# OFFLINE_MODE is read per request in api.py

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
JSON_LOGS = _flag("JSON_LOGS")
