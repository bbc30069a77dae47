"""
Shared helpers for the ServicePower Cloud Functions.
Credential masking, vendor date handling, tolerant XML key lookup and the
HTTP response pieces used by every endpoint.
"""

import logging
import sys
import traceback
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

PASSWORD_MASK = "****"
VENDOR_DATE_FORMAT = "%Y-%m-%d"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST",
    "Access-Control-Allow-Headers": "Content-Type",
}

# Cloud Functions response: (body, status, headers)
FunctionResponse = Tuple[Any, int, Dict[str, str]]


class ServicePowerError(Exception):
    """Base error for the ServicePower functions."""


class ConfigError(ServicePowerError):
    """Raised when the deployment config store exists but cannot be read."""


class TransportError(ServicePowerError):
    """Raised when the HTTP call to ServicePower fails before a response arrives."""


class ErrorClass(str, Enum):
    """Classification of a failed vendor exchange."""

    TRANSPORT_FAILURE = "transport_failure"
    PROTOCOL_FAULT = "protocol_fault"
    APPLICATION_ERROR = "application_error"
    MALFORMED_RESPONSE = "malformed_response"


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stdout, where Cloud Functions collects them."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(handler)


def mask_password(password: Optional[str]) -> str:
    """Mask a password for logs and error payloads.

    Args:
        password: Password to mask

    Returns:
        First two characters, a fixed mask and the last two characters, or
        just the mask when the password is shorter than four characters
    """
    if not password or len(password) < 4:
        return PASSWORD_MASK
    return password[:2] + PASSWORD_MASK + password[-2:]


def format_vendor_date(value: Any) -> str:
    """Format a date, datetime or ISO date string as ServicePower expects (YYYY-MM-DD)."""
    if isinstance(value, datetime):
        value = value.date()
    elif isinstance(value, str):
        value = parse_vendor_date(value[:10])
    return value.strftime(VENDOR_DATE_FORMAT)


def parse_vendor_date(text: str) -> date:
    """Parse a ServicePower date (YYYY-MM-DD)."""
    return datetime.strptime(text, VENDOR_DATE_FORMAT).date()


def local_name(key: str) -> str:
    """Strip an XML namespace prefix from an element name."""
    return key.split(":")[-1]


def lookup_alias(mapping: Any, aliases: Iterable[str]) -> Any:
    """Return the value of the first known alias present in a parsed XML mapping.

    ServicePower is inconsistent about element names (one response element is
    spelled ``getCallInfoResponce``) and about namespace prefixes, so lookups
    go through a fixed, ordered list of names. Keys are compared both as
    written and by local name, so ``soapenv:Body``, ``soap:Body`` and ``Body``
    all match the alias ``Body``.

    Args:
        mapping: Parsed XML node (anything other than a dict yields None)
        aliases: Element names to try, in order of preference

    Returns:
        Matching value or None
    """
    if not isinstance(mapping, dict):
        return None

    for alias in aliases:
        if alias in mapping:
            return mapping[alias]
        for key, value in mapping.items():
            if not key.startswith("@") and local_name(key) == alias:
                return value
    return None


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_response(body: Dict[str, Any], status: int = 200) -> FunctionResponse:
    return body, status, dict(CORS_HEADERS)


def preflight_response() -> FunctionResponse:
    return "", 204, dict(CORS_HEADERS)


def internal_error_response(error: Exception, debug: bool = False, **extra: Any) -> FunctionResponse:
    """Build the generic 500 returned when a handler fails unexpectedly.

    Args:
        error: The exception that escaped the handler
        debug: Attach the formatted traceback (development deployments only)
        **extra: Additional top-level fields, e.g. ``success=False``

    Returns:
        Cloud Functions response tuple
    """
    body = {
        "status": "error",
        **extra,
        "error": "Internal server error",
        "message": str(error),
    }
    if debug:
        body["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return json_response(body, 500)


def request_params(request) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a Flask request into (body, query) mappings.

    A body that is not a JSON object is treated as empty.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    query = request.args.to_dict() if request.args else {}
    return body, query


def truncate(text: str, limit: int = 500) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
