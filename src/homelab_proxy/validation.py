"""Input validators.

Each validator returns None for valid input or a message describing the
problem, so callers can collect every problem before reporting.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional
from urllib.parse import urlparse

SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)
DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$",
    re.IGNORECASE,
)
HOSTNAME_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$",
    re.IGNORECASE,
)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_subdomain(subdomain: str) -> Optional[str]:
    if not subdomain:
        return "Subdomain is required"
    if len(subdomain) > 63:
        return "Subdomain cannot be longer than 63 characters"
    if not SUBDOMAIN_RE.match(subdomain):
        return (
            "Subdomain must contain only letters, numbers, and hyphens, "
            "and cannot start or end with a hyphen"
        )
    return None


def validate_domain(domain: str) -> Optional[str]:
    if not domain:
        return "Domain is required"
    if not DOMAIN_RE.match(domain):
        return "Invalid domain format"
    return None


def validate_ip_address(ip: str) -> Optional[str]:
    if not ip:
        return "IP address is required"
    try:
        ipaddress.IPv4Address(ip)
    except ValueError:
        return "Invalid IP address format"
    return None


def validate_target(target: str) -> Optional[str]:
    """Validate a proxy target in ``host:port`` form."""
    if not target:
        return "Target is required"
    parts = target.split(":")
    if len(parts) != 2:
        return "Target must be in format host:port"
    host, port = parts
    if validate_ip_address(host) and not HOSTNAME_RE.match(host):
        return "Invalid host format"
    if not port.isdigit() or not 1 <= int(port) <= 65535:
        return "Port must be a number between 1 and 65535"
    return None


def validate_email(email: str) -> Optional[str]:
    if not email:
        return "Email is required"
    if not EMAIL_RE.match(email):
        return "Invalid email format"
    return None


def validate_url(url: str) -> Optional[str]:
    if not url:
        return "URL is required"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "Invalid URL format"
    return None
