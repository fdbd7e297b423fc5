import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


DB_URL = os.getenv("DB_URL", "sqlite:///./uploads.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
CACHE_MAX_AGE_SECONDS = int(os.getenv("CACHE_MAX_AGE_SECONDS", "3600"))

# Object storage
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
UPLOAD_DIR = os.getenv(
    "UPLOAD_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "uploads"))
)
# Backends reject non-final parts smaller than this (S3 and R2 use 5 MiB).
STORAGE_MIN_PART_SIZE = int(os.getenv("STORAGE_MIN_PART_SIZE", str(5 * 1024 * 1024)))
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None
S3_REGION = os.getenv("S3_REGION", "us-east-1")
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID") or None
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY") or None

# Upload protocol
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))
DIRECT_UPLOAD_LIMIT = int(os.getenv("DIRECT_UPLOAD_LIMIT_BYTES", str(95 * 1024 * 1024)))
MAX_PARTS = 10000

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "")

# Identity
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
UPLOAD_AUTH_REQUIRED = _flag("UPLOAD_AUTH_REQUIRED", "false")
ADMIN_EMAILS = {
    email.strip().lower() for email in os.getenv("ADMIN_EMAILS", "").split(",") if email.strip()
}

# Admin notifications
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "")
FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@localhost")
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")

ENABLE_CLEANER = _flag("ENABLE_CLEANER", "true")
CLEANER_INTERVAL_MINUTES = int(os.getenv("CLEANER_INTERVAL_MINUTES", "60"))
