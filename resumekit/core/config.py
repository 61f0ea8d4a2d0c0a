import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./resumekit.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CHECKOUT_SESSION_TTL_MINUTES = int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "30"))

# ✅ Region lookup
GEOIP_API_URL = os.getenv("GEOIP_API_URL", "https://ipapi.co/{ip}/country/")
GEOIP_TIMEOUT_SECONDS = float(os.getenv("GEOIP_TIMEOUT_SECONDS", "2.0"))

# ✅ Subscription lifecycle
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
SWEEP_ENABLED = os.getenv("SWEEP_ENABLED", "1") == "1"
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", "60"))

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
