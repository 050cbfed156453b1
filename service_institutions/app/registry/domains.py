"""
Normalization of institution identifiers and backend URLs.
"""

import re
from typing import Optional

DOMAIN_PATTERN = re.compile(r"^[a-z0-9.-]+$")
MIN_DOMAIN_LENGTH = 3
MAX_DOMAIN_LENGTH = 255

MIN_BACKEND_URL_LENGTH = 12
MAX_BACKEND_URL_LENGTH = 255


def normalize_organization_domain(value: Optional[str]) -> Optional[str]:
    """Lowercase a schacHomeOrganization; None when it is not a plausible domain."""
    if not value or not isinstance(value, str):
        return None
    domain = value.strip().lower()
    if not MIN_DOMAIN_LENGTH <= len(domain) <= MAX_DOMAIN_LENGTH:
        return None
    if not DOMAIN_PATTERN.match(domain):
        return None
    return domain


def base_domain(domain: str) -> Optional[str]:
    """``mail.uned.es`` -> ``uned.es``; None when there is no subdomain to drop."""
    parts = domain.split(".")
    if len(parts) > 2:
        return ".".join(parts[-2:])
    return None


def clean_backend_url(raw: Optional[str]) -> Optional[str]:
    """Trim, strip trailing slashes and a trailing ``/auth`` segment."""
    if not raw or not isinstance(raw, str):
        return None
    cleaned = raw.strip().rstrip("/")
    if cleaned.endswith("/auth"):
        cleaned = cleaned[:-len("/auth")]
    return cleaned or None


def normalize_backend_base_url(raw: Optional[str]) -> Optional[str]:
    """Clean a backend URL and require an http(s) base URL of sane length."""
    cleaned = clean_backend_url(raw)
    if not cleaned:
        return None
    if not cleaned.startswith(("https://", "http://")):
        return None
    if not MIN_BACKEND_URL_LENGTH <= len(cleaned) <= MAX_BACKEND_URL_LENGTH:
        return None
    return cleaned
