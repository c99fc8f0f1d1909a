import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Seconds an emptied room stays in memory after its last participant disconnects
DISCONNECT_GRACE_SECONDS = float(os.getenv("DISCONNECT_GRACE_SECONDS", 30))

INVITE_CODE_LENGTH = int(os.getenv("INVITE_CODE_LENGTH", 8))
INVITE_CODE_MAX_ATTEMPTS = int(os.getenv("INVITE_CODE_MAX_ATTEMPTS", 10))

SMTP_HOST = os.getenv("SMTP_HOST", None)
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", None)
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", None)
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() in {"1", "true", "yes"}
EMAIL_SENDER = os.getenv("EMAIL_SENDER", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes"}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
