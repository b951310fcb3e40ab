import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite://")

# Organization that operates the platform and sells plans to the other tenants
PLATFORM_ORG_ID = int(os.getenv("PLATFORM_ORG_ID", "1"))

# Dunning configuration (days are counted from the moment a subscription enters `vencida`)
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
SUSPENSION_DAYS = int(os.getenv("SUSPENSION_DAYS", "14"))
DUNNING_REMINDER_DAY = int(os.getenv("DUNNING_REMINDER_DAY", "3"))
DUNNING_URGENT_DAY = int(os.getenv("DUNNING_URGENT_DAY", "10"))
GRACE_URGENT_REMINDER_DAYS = int(os.getenv("GRACE_URGENT_REMINDER_DAYS", "3"))
UPCOMING_CHARGE_DAYS = int(os.getenv("UPCOMING_CHARGE_DAYS", "3"))
TRIAL_REMINDER_DAYS = int(os.getenv("TRIAL_REMINDER_DAYS", "3"))

# Pause between items of a sweep so the gateway rate limits are not saturated
SWEEP_ITEM_DELAY_SECONDS = float(os.getenv("SWEEP_ITEM_DELAY_SECONDS", "0.5"))

# Polling fallback only looks at pending subscriptions older than this
POLLING_MIN_AGE_MINUTES = int(os.getenv("POLLING_MIN_AGE_MINUTES", "10"))

# Public checkout links
CHECKOUT_TOKEN_TTL_HOURS = int(os.getenv("CHECKOUT_TOKEN_TTL_HOURS", "72"))

# Webhook monitor thresholds (errors per hour)
WEBHOOK_ERROR_WARNING_THRESHOLD = int(os.getenv("WEBHOOK_ERROR_WARNING_THRESHOLD", "5"))
WEBHOOK_ERROR_CRITICAL_THRESHOLD = int(os.getenv("WEBHOOK_ERROR_CRITICAL_THRESHOLD", "20"))

# Dodo Payments Configuration
DODO_PAYMENTS_API_KEY = os.getenv("DODO_PAYMENTS_API_KEY")
DODO_PAYMENTS_WEBHOOK_SECRET = os.getenv("DODO_PAYMENTS_WEBHOOK_SECRET")
# "test_mode" or "live_mode" - default to test for safety
DODO_PAYMENTS_ENVIRONMENT = os.getenv("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
# Recurring product the platform subscriptions are billed against
DODO_SUBSCRIPTION_PRODUCT_ID = os.getenv("DODO_SUBSCRIPTION_PRODUCT_ID")
# Payer used for every checkout while in test_mode
DODO_TEST_PAYER_EMAIL = os.getenv("DODO_TEST_PAYER_EMAIL", "test_payer@testuser.com")

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Nexo <noreply@nexo.app>")

# Redis (ARQ worker + modules cache)
REDIS_URL = os.getenv("REDIS_URL")

# Accept X-Organization-Id / X-User-Id set by the authenticating API gateway
TRUST_GATEWAY_HEADERS = os.getenv("TRUST_GATEWAY_HEADERS", "false").lower() == "true"
