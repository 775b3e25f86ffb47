"""Website host validation for step 1.

The check is deliberately lenient: it catches obvious typos (a pasted
scheme, spaces, a missing TLD, doubled dots) rather than enforcing RFC
hostname grammar.
"""

from __future__ import annotations

import re

from .exceptions import ValidationError

PROTOCOLS = ("https://", "http://")
DEFAULT_PROTOCOL = "https://"

_BASIC_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", re.IGNORECASE)
# At least two letters for the TLD, or a two-part TLD like .co.uk
_VALID_TLD = re.compile(r"\.([a-z]{2,}|[a-z]{2,}\.[a-z]{2,})$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s")

MISSING_HOST_MESSAGE = "Please enter a website URL"
INVALID_HOST_MESSAGE = "Enter a valid domain (e.g., verly.ai)"


def is_valid_host(value: str | None) -> bool:
    """Check whether ``value`` is an acceptable website host.

    Args:
        value: Host as typed by the user, without a protocol

    Returns:
        True for ``localhost`` or a plausible dotted domain name
    """
    if not value:
        return False
    v = value.strip().lower()
    if not v:
        return False
    if v.startswith(PROTOCOLS):
        return False
    if "." not in v and v != "localhost":
        return False
    if _WHITESPACE.search(v):
        return False
    if v == "localhost":
        return True
    if not _BASIC_DOMAIN.match(v):
        return False
    if not _VALID_TLD.search(v):
        return False
    if ".." in v:
        return False
    return True


def validate_host(value: str | None) -> str:
    """Validate a host and return it trimmed.

    Raises:
        ValidationError: With a user-facing message if the host is unusable.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        raise ValidationError(MISSING_HOST_MESSAGE, context={"host": value})
    if not is_valid_host(trimmed):
        raise ValidationError(INVALID_HOST_MESSAGE, context={"host": trimmed})
    return trimmed


def compose_url(protocol: str, host: str) -> str:
    """Join protocol and host into the website URL."""
    return f"{protocol}{host.strip()}".strip()


def split_url(url: str | None) -> tuple[str, str]:
    """Split a website URL back into ``(protocol, host)``.

    URLs without a known scheme are treated as bare hosts on https. A
    trailing slash is dropped.
    """
    if not url:
        return DEFAULT_PROTOCOL, ""
    value = url.strip()
    for protocol in PROTOCOLS:
        if value.lower().startswith(protocol):
            return protocol, value[len(protocol):].rstrip("/")
    return DEFAULT_PROTOCOL, value.rstrip("/")


_SCHEME_PREFIX = re.compile(r"^https?://", re.IGNORECASE)
_WWW_PREFIX = re.compile(r"^www\.", re.IGNORECASE)


def clean_host(value: str) -> str:
    """Normalize pasted input into a bare host.

    Drops a leading scheme and ``www.``, then any path, query or fragment,
    and surrounding whitespace.
    """
    value = _SCHEME_PREFIX.sub("", value.strip())
    value = _WWW_PREFIX.sub("", value)
    value = value.split("/")[0].split("?")[0].split("#")[0]
    return value.strip()
