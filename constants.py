import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

CORS_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# Minimum gap between two global chat messages from the same user
GLOBAL_MESSAGE_INTERVAL_MS = int(os.getenv("GLOBAL_MESSAGE_INTERVAL_MS", 5000))

DEFAULT_AVATAR = os.getenv("DEFAULT_AVATAR", "/public/images/no-avatar.jpeg")

# When set, DELETE /messages/delete requires a matching X-Admin-Token header
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", None)
