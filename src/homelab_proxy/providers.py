"""DNS and reverse-proxy clients.

Supported DNS Providers:
    - cloudflare: Cloudflare DNS records (API v4, bearer token)

Supported Proxy Host Providers:
    - nginx-proxy-manager: Nginx Proxy Manager proxy hosts (JWT from /api/tokens)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_AUTO_TTL = 1
CLOUDFLARE_DEFAULT_TTL = 300
CLOUDFLARE_RECORD_EXISTS = 81057

# =============================================================================
# Errors
# =============================================================================


class ProviderError(Exception):
    """A DNS or proxy host API call failed.

    ``codes`` holds the provider's own error codes, when it reports any.
    """

    def __init__(self, message: str, codes: Optional[List[int]] = None):
        super().__init__(message)
        self.codes = list(codes or [])


class RecordNotFoundError(ProviderError):
    """The requested record or proxy host does not exist."""


class AuthenticationError(ProviderError):
    """The provider rejected our credentials."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ManagedRecord:
    """A DNS record as listed by a DNS provider."""

    name: str
    type: str
    content: str
    domain: str = ""
    id: str = ""
    proxied: bool = False

    def split_name(self) -> tuple[str, str]:
        """Return ``(subdomain, domain)`` for this record.

        Uses the zone the record was listed from when known, otherwise treats
        the first label as the subdomain.
        """
        if self.domain and self.name.endswith("." + self.domain):
            return self.name[: -(len(self.domain) + 1)], self.domain
        subdomain, _, domain = self.name.partition(".")
        return subdomain, domain


@dataclass(frozen=True)
class ProxyHost:
    """A proxy host configured in the reverse proxy manager."""

    id: int
    domains: List[str] = field(default_factory=list)
    target: str = ""
    ssl: bool = False
    enabled: bool = True
    created: str = ""
    modified: str = ""


def _parse_ttl(ttl: Any) -> int:
    # Cloudflare uses a TTL of 1 for "automatic".
    if ttl in (None, "", CLOUDFLARE_AUTO_TTL) or str(ttl).strip().lower() == "auto":
        return CLOUDFLARE_AUTO_TTL
    try:
        return int(ttl)
    except (TypeError, ValueError):
        return CLOUDFLARE_DEFAULT_TTL


def _split_target(target: str) -> tuple[str, int]:
    host, _, port = target.partition(":")
    try:
        return host, int(port) if port else 80
    except ValueError:
        return host, 80


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_records(self, domain: Optional[str] = None) -> List[ManagedRecord]:
        """List records of one domain, or of every configured domain."""
        pass

    @abstractmethod
    def create_cname_record(
        self, subdomain: str, domain: str, target: Optional[str] = None
    ) -> ManagedRecord:
        """Create ``subdomain.domain`` as a CNAME (to the apex unless ``target`` is given)."""
        pass

    @abstractmethod
    def create_a_record(self, subdomain: str, domain: str, ip: str) -> ManagedRecord:
        """Create ``subdomain.domain`` as an A record."""
        pass

    @abstractmethod
    def delete_record(self, subdomain: str, domain: str) -> None:
        """Delete ``subdomain.domain``. Raises RecordNotFoundError if absent."""
        pass


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare DNS provider implementation."""

    def __init__(
        self,
        api_token: str,
        domains: Optional[List[str]] = None,
        ttl: Any = "auto",
        base_url: str = CLOUDFLARE_API_URL,
        timeout_seconds: float = 10.0,
    ):
        self._url = base_url.rstrip("/")
        self._domains = list(domains or [])
        self._ttl = _parse_ttl(ttl)
        self._timeout = timeout_seconds
        self._zone_ids: Dict[str, str] = {}
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ProviderError(f"{self.name} request {method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"{self.name} rejected the API token")
        if not isinstance(data, dict) or not data.get("success", False):
            errors = data.get("errors") if isinstance(data, dict) else None
            codes = [e.get("code") for e in errors or [] if isinstance(e, dict)]
            raise ProviderError(f"{self.name} API error: {self._describe_errors(errors)}", codes)
        return data.get("result")

    @staticmethod
    def _describe_errors(errors: Any) -> str:
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return str(first.get("message") or first)
        return "unknown error"

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/user/tokens/verify")
            logger.info(f"{self.name} connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def get_zone_id(self, domain: str) -> str:
        if domain in self._zone_ids:
            return self._zone_ids[domain]
        result = self._request("GET", "/zones", params={"name": domain})
        if not result:
            raise RecordNotFoundError(f"Domain {domain} not found in {self.name}")
        zone_id = str(result[0]["id"])
        self._zone_ids[domain] = zone_id
        return zone_id

    def _to_record(self, raw: Dict[str, Any], domain: str) -> ManagedRecord:
        return ManagedRecord(
            name=str(raw.get("name") or ""),
            type=str(raw.get("type") or ""),
            content=str(raw.get("content") or ""),
            domain=domain,
            id=str(raw.get("id") or ""),
            proxied=bool(raw.get("proxied", False)),
        )

    def list_records(self, domain: Optional[str] = None) -> List[ManagedRecord]:
        domains = [domain] if domain else self._domains
        records: List[ManagedRecord] = []
        for dom in domains:
            zone_id = self.get_zone_id(dom)
            result = self._request("GET", f"/zones/{zone_id}/dns_records", params={"per_page": 100})
            for raw in result or []:
                if not isinstance(raw, dict):
                    logger.warning(f"Skipping malformed record: {raw}")
                    continue
                records.append(self._to_record(raw, dom))
        return records

    def get_record(self, subdomain: str, domain: str) -> ManagedRecord:
        zone_id = self.get_zone_id(domain)
        record_name = f"{subdomain}.{domain}"
        result = self._request("GET", f"/zones/{zone_id}/dns_records", params={"name": record_name})
        if not result:
            raise RecordNotFoundError(f"DNS record {record_name} not found")
        return self._to_record(result[0], domain)

    def validate_apex_record(self, domain: str) -> ManagedRecord:
        """Make sure the apex has an A record for CNAMEs to point at."""
        zone_id = self.get_zone_id(domain)
        result = self._request(
            "GET", f"/zones/{zone_id}/dns_records", params={"name": domain, "type": "A"}
        )
        if not result:
            raise ProviderError(
                f"No A record found for apex domain {domain}. "
                "Please create an A record for your domain first."
            )
        record = self._to_record(result[0], domain)
        logger.info(f"Found A record for {domain}: {record.content}")
        return record

    def _create_record(self, record_type: str, subdomain: str, domain: str, content: str) -> ManagedRecord:
        zone_id = self.get_zone_id(domain)
        record_name = f"{subdomain}.{domain}"
        payload = {
            "type": record_type,
            "name": record_name,
            "content": content,
            "ttl": self._ttl,
            "proxied": False,
        }
        try:
            result = self._request("POST", f"/zones/{zone_id}/dns_records", json=payload)
        except ProviderError as e:
            if CLOUDFLARE_RECORD_EXISTS in e.codes:
                logger.warning(f"DNS record {record_name} already exists")
                return self.get_record(subdomain, domain)
            raise
        logger.info(f"Added DNS record: {record_name} ({record_type}) -> {content}")
        return self._to_record(result, domain)

    def create_cname_record(
        self, subdomain: str, domain: str, target: Optional[str] = None
    ) -> ManagedRecord:
        self.validate_apex_record(domain)
        return self._create_record("CNAME", subdomain, domain, target or domain)

    def create_a_record(self, subdomain: str, domain: str, ip: str) -> ManagedRecord:
        return self._create_record("A", subdomain, domain, ip)

    def delete_record(self, subdomain: str, domain: str) -> None:
        record = self.get_record(subdomain, domain)
        zone_id = self.get_zone_id(domain)
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record.id}")
        logger.info(f"Deleted DNS record: {record.name}")


# =============================================================================
# Proxy Host Provider Interface and Implementations
# =============================================================================


class ProxyHostProvider(ABC):
    """Abstract base class for reverse proxy managers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the proxy manager."""
        pass

    @abstractmethod
    def list_proxy_hosts(self) -> List[ProxyHost]:
        """List every proxy host."""
        pass

    @abstractmethod
    def create_proxy_host(
        self,
        subdomain: str,
        domain: str,
        target: str,
        *,
        force_ssl: bool = False,
        certificate_id: int = 0,
        websockets: Optional[bool] = None,
    ) -> ProxyHost:
        """Create a proxy host forwarding ``subdomain.domain`` to ``host:port``."""
        pass

    @abstractmethod
    def delete_proxy_host(self, subdomain: str, domain: str) -> None:
        """Delete the proxy host serving ``subdomain.domain``. Raises RecordNotFoundError if absent."""
        pass


class NginxProxyManagerProvider(ProxyHostProvider):
    """Nginx Proxy Manager provider implementation."""

    def __init__(
        self,
        url: str,
        email: str,
        password: str,
        default_websockets: bool = True,
        timeout_seconds: float = 10.0,
    ):
        self._url = url.rstrip("/")
        self._email = email
        self._password = password
        self._default_websockets = default_websockets
        self._timeout = timeout_seconds
        self._token: Optional[str] = None
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Nginx Proxy Manager"

    def authenticate(self) -> str:
        try:
            response = self._session.post(
                f"{self._url}/api/tokens",
                json={"identity": self._email, "secret": self._password},
                timeout=self._timeout,
            )
            response.raise_for_status()
            token = response.json().get("token")
        except (requests.exceptions.RequestException, json.JSONDecodeError, AttributeError) as e:
            raise AuthenticationError(f"Failed to authenticate with {self.name}: {e}") from e
        if not token:
            raise AuthenticationError(f"Failed to authenticate with {self.name}: no token returned")
        self._token = token
        self._session.headers.update({"Authorization": f"Bearer {token}"})
        logger.info(f"Successfully authenticated with {self.name}")
        return token

    def _ensure_authenticated(self) -> None:
        if not self._token:
            self.authenticate()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        self._ensure_authenticated()
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
            response.raise_for_status()
            return response.json() if response.content else None
        except requests.exceptions.HTTPError as e:
            detail = self._error_message(e.response)
            raise ProviderError(f"{self.name} request {method} {path} failed: {detail or e}") from e
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ProviderError(f"{self.name} request {method} {path} failed: {e}") from e

    @staticmethod
    def _error_message(response: Optional[requests.Response]) -> str:
        # NPM reports errors as {"error": {"code": 400, "message": "..."}}
        if response is None:
            return ""
        try:
            body = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if body.get("message"):
                return str(body["message"])
        return ""

    def test_connection(self) -> bool:
        try:
            self.authenticate()
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    @staticmethod
    def _to_proxy_host(raw: Dict[str, Any]) -> ProxyHost:
        return ProxyHost(
            id=int(raw.get("id") or 0),
            domains=list(raw.get("domain_names") or []),
            target=f"{raw.get('forward_host', '')}:{raw.get('forward_port', '')}",
            ssl=int(raw.get("certificate_id") or 0) > 0,
            enabled=bool(raw.get("enabled", True)),
            created=str(raw.get("created_on") or ""),
            modified=str(raw.get("modified_on") or ""),
        )

    def list_proxy_hosts(self) -> List[ProxyHost]:
        data = self._request("GET", "/api/nginx/proxy-hosts")
        if not isinstance(data, list):
            raise ProviderError(
                f"Unexpected response format from {self.name}: "
                f"expected list, got {type(data).__name__}"
            )
        return [self._to_proxy_host(raw) for raw in data if isinstance(raw, dict)]

    def get_proxy_host(self, hostname: str) -> ProxyHost:
        for host in self.list_proxy_hosts():
            if hostname in host.domains:
                return host
        raise RecordNotFoundError(f"Proxy host for domain {hostname} not found")

    def create_proxy_host(
        self,
        subdomain: str,
        domain: str,
        target: str,
        *,
        force_ssl: bool = False,
        certificate_id: int = 0,
        websockets: Optional[bool] = None,
    ) -> ProxyHost:
        hostname = f"{subdomain}.{domain}"
        forward_host, forward_port = _split_target(target)
        payload = {
            "domain_names": [hostname],
            "forward_scheme": "http",
            "forward_host": forward_host,
            "forward_port": forward_port,
            "access_list_id": 0,
            "certificate_id": certificate_id,
            "ssl_forced": force_ssl and certificate_id > 0,
            "caching_enabled": False,
            "block_exploits": True,
            "allow_websocket_upgrade": self._default_websockets if websockets is None else websockets,
            "advanced_config": "",
            "locations": [],
            "meta": {},
        }
        try:
            data = self._request("POST", "/api/nginx/proxy-hosts", json=payload)
        except ProviderError as e:
            if "already exists" in str(e).lower() or "already in use" in str(e).lower():
                logger.warning(f"Proxy host {hostname} already exists")
                return self.get_proxy_host(hostname)
            raise
        logger.info(f"Proxy host created: {hostname} -> {target}")
        return self._to_proxy_host(data or {})

    def delete_proxy_host(self, subdomain: str, domain: str) -> None:
        hostname = f"{subdomain}.{domain}"
        host = self.get_proxy_host(hostname)
        self._request("DELETE", f"/api/nginx/proxy-hosts/{host.id}")
        logger.info(f"Proxy host deleted: {hostname}")
