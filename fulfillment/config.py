"""
Shared configuration

Each service reads its own settings from the environment in its main.py.
Values used by more than one service live here.
"""

import logging
import os

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Values of the x-internal-service header for service-to-service calls
SAGA_SERVICE = "saga-service"
PAYMENT_SERVICE = "payment-service"


def configure_logging(service: str) -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format=f"%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s",
    )
