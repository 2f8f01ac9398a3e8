import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tasktracker.db")

# Security config
SECRET_KEY = os.getenv("SECRET_KEY", "change-this")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# Email (Resend)
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
FROM_EMAIL = os.getenv("FROM_EMAIL", "")

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
APP_URL = os.getenv("APP_URL", "http://localhost:5173")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", APP_URL).split(",") if o.strip()]

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "static/uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

INVITATION_EXPIRE_HOURS = int(os.getenv("INVITATION_EXPIRE_HOURS", "72"))

RECURRING_ENABLED = os.getenv("RECURRING_ENABLED", "true").lower() in ("1", "true", "yes")
RECURRING_INTERVAL_MINUTES = float(os.getenv("RECURRING_INTERVAL_MINUTES", "60"))

RATE_LIMIT_CLEANUP_SECONDS = float(os.getenv("RATE_LIMIT_CLEANUP_SECONDS", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
