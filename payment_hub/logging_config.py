import logging
from typing import Any, Mapping

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

SECRET_FIELDS = {"private_key", "privatekey", "secret", "public_key", "signature"}
MASKED_FIELDS = {"customer_email", "email"}


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger with a consistent format.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


def mask_payload(payload: Mapping[str, Any]) -> dict:
    """
    Copy of a processor/webhook payload that is safe to log.
    """
    masked = {}
    for key, value in payload.items():
        if key in SECRET_FIELDS:
            masked[key] = "***"
        elif key in MASKED_FIELDS and value:
            masked[key] = "***@***.***"
        elif isinstance(value, Mapping):
            masked[key] = mask_payload(value)
        else:
            masked[key] = value
    return masked
