import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_PATH = os.getenv("DATABASE_PATH", "dispatch.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() in ("1", "true", "yes", "on")

# LocationIQ (address search / reverse geocoding)
LOCATIONIQ_API_KEY = os.getenv("LOCATIONIQ_API_KEY", "")
LOCATIONIQ_BASE_URL = os.getenv("LOCATIONIQ_BASE_URL", "https://us1.locationiq.com/v1")
GEOCODING_TIMEOUT = float(os.getenv("GEOCODING_TIMEOUT", "10"))

# Notification channel reconnection: delay doubles from the base up to the cap
NOTIFY_RECONNECT_DELAY = float(os.getenv("NOTIFY_RECONNECT_DELAY", "1.0"))
NOTIFY_RECONNECT_MAX_DELAY = float(os.getenv("NOTIFY_RECONNECT_MAX_DELAY", "5.0"))
NOTIFY_RECONNECT_ATTEMPTS = int(os.getenv("NOTIFY_RECONNECT_ATTEMPTS", "5"))
NOTIFY_QUEUE_SIZE = int(os.getenv("NOTIFY_QUEUE_SIZE", "256"))
NOTIFY_PING_INTERVAL = float(os.getenv("NOTIFY_PING_INTERVAL", "10"))

# 0 = bounded only by the candidate set
ASSIGNMENT_MAX_CONFLICTS = int(os.getenv("ASSIGNMENT_MAX_CONFLICTS", "0"))

# Reservation holds younger than this are assumed to belong to a live request
RECOVERY_GRACE_SECONDS = int(os.getenv("RECOVERY_GRACE_SECONDS", "60"))
