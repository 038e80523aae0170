import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./projects.db")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
TOKEN_TTL_HOURS = int(os.getenv("TOKEN_TTL_HOURS", "24"))
CONFIRMATION_TTL_DAYS = int(os.getenv("CONFIRMATION_TTL_DAYS", "7"))
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Bootstrap admin, created on startup when both are set
SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "")

# HTTP
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Object storage (MinIO / S3)
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "http://localhost:9000")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "")
S3_BUCKET = os.getenv("S3_BUCKET", "documents")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
PRESIGNED_URL_TTL = int(os.getenv("PRESIGNED_URL_TTL", "3600"))

# Email (Mailjet)
MAILJET_API_KEY = os.getenv("MAILJET_API_KEY", "")
MAILJET_SECRET_KEY = os.getenv("MAILJET_SECRET_KEY", "")
MAIL_FROM_EMAIL = os.getenv("MAIL_FROM_EMAIL", "noreply@example.com")
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "Project Management")

# SMS (Twilio)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER", "")

# WhatsApp Cloud API
WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "").rstrip("/")
WHATSAPP_API_TOKEN = os.getenv("WHATSAPP_API_TOKEN", "")

DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "226")
NOTIFY_MAX_WORKERS = int(os.getenv("NOTIFY_MAX_WORKERS", "4"))
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "10"))

# Default UI language, used for users without a settings row
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "fr")

# Concurrent read-only queries per request (dashboard)
DB_READ_WORKERS = int(os.getenv("DB_READ_WORKERS", "4"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
