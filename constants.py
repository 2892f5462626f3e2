import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3002))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 500))
MAX_DISPLAY_NAME_LENGTH = int(os.getenv("MAX_DISPLAY_NAME_LENGTH", 20))

# Outbound buffering per connection; a full queue drops events for that client only
SEND_QUEUE_SIZE = int(os.getenv("SEND_QUEUE_SIZE", 100))
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5))

# 0 disables the limit
IDLE_TIMEOUT_SECONDS = float(os.getenv("IDLE_TIMEOUT_SECONDS", 0))
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", 0))

REJECT_UNJOINED_SENDERS = os.getenv("REJECT_UNJOINED_SENDERS", "false").lower() in ("1", "true", "yes")

# Upper bound on flushing outbound queues when the app stops
SHUTDOWN_DRAIN_SECONDS = float(os.getenv("SHUTDOWN_DRAIN_SECONDS", 5))
