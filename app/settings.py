import os

booking_service_url = os.environ.get("BOOKING_SERVICE_URL", "http://localhost:3000/api")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "5.0"))

# SLA windows applied by the authority when it moves a booking forward
OWNER_RESPONSE_WINDOW_HOURS = int(os.environ.get("OWNER_RESPONSE_WINDOW_HOURS", "3"))
PAYMENT_WINDOW_HOURS = int(os.environ.get("PAYMENT_WINDOW_HOURS", "1"))

SLA_TICK_SECONDS = float(os.environ.get("SLA_TICK_SECONDS", "1.0"))
SLA_URGENCY_MINUTES = int(os.environ.get("SLA_URGENCY_MINUTES", "10"))

EXCHANGE_RATES_TTL = int(os.environ.get("EXCHANGE_RATES_TTL", "300"))  # 5 minutes
