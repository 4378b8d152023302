"""
Error Types

Exception taxonomy shared by the bridge and helpers for reporting errors
to the operator without leaking internals.
"""

import logging

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Check server logs for details."


class BridgeError(Exception):
    """Base error. Operational errors carry a message safe to show the operator."""

    def __init__(self, message: str, operational: bool = True):
        super().__init__(message)
        self.operational = operational


class ValidationError(BridgeError):
    """Malformed input rejected before any side effect"""


class DeliveryError(BridgeError):
    """Transient failure talking to either chat network"""


class PairingError(BridgeError):
    """WhatsApp connection lifecycle problem that needs operator action"""


class ConfigError(ValueError):
    """Fatal configuration problem; the service must not start"""


def safe_error_message(error: BaseException) -> str:
    """Message that can be sent to the operator chat"""
    if isinstance(error, BridgeError) and error.operational:
        return str(error)
    return GENERIC_ERROR_MESSAGE


def handle_error(error: BaseException, context: str = ""):
    """Log an error with the right severity for its kind"""
    prefix = f"[{context}] " if context else ""
    if isinstance(error, BridgeError) and error.operational:
        logger.warning(f"{prefix}Operational error: {error}")
    else:
        logger.error(f"{prefix}Unexpected error: {error}", exc_info=error)
