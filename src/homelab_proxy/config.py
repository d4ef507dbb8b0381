"""Configuration for homelab-proxy.

Settings live in a YAML file (default ``~/.homelab-proxy/config.yaml``)
written by ``homelab-proxy init``. Environment variables override individual
values at load time:

    Files:
        HOMELAB_PROXY_CONFIG   Path to the YAML config file

    Cloudflare:
        CLOUDFLARE_API_TOKEN   API token with DNS edit permission

    Nginx Proxy Manager:
        NPM_URL                Base URL (default: http://localhost:81)
        NPM_EMAIL              Admin e-mail
        NPM_PASSWORD           Admin password

    Health checks:
        CLEANUP_TIMEOUT_MS     Per-request timeout in milliseconds (default: 5000)
        CLEANUP_CONCURRENCY    Probes run at the same time (default: 5)
        HEALTH_CHECK_USERNAME  Basic-auth username sent with every probe (optional)
        HEALTH_CHECK_PASSWORD  Basic-auth password sent with every probe (optional)

    Runtime:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        AUTO_CLEANUP           Remove stale records in scheduled runs (default: false)
        POLL_INTERVAL_SECONDS  Interval between scheduled runs (default: 86400)
        WEBHOOK_URL            POST a summary here after scheduled runs (optional)
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from homelab_proxy.cleanup import CleanupSettings
from homelab_proxy.health import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT_MS, Credentials
from homelab_proxy.validation import validate_domain, validate_email, validate_url

logger = logging.getLogger(__name__)

# =============================================================================
# Environment
# =============================================================================

DEFAULT_CONFIG_PATH = str(Path.home() / ".homelab-proxy" / "config.yaml")
CONFIG_PATH = os.getenv("HOMELAB_PROXY_CONFIG", DEFAULT_CONFIG_PATH)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
AUTO_CLEANUP = os.getenv("AUTO_CLEANUP", "false")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "86400"))
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")

CONFIG_VERSION = "1.0.0"


class ConfigError(Exception):
    """The configuration file is missing or cannot be used."""


class ConfigNotFoundError(ConfigError):
    pass


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class CloudflareConfig:
    api_token: str = ""
    domains: List[str] = field(default_factory=list)
    ttl: Any = "auto"
    default_ip: str = ""


@dataclass(frozen=True)
class NginxProxyManagerConfig:
    url: str = "http://localhost:81"
    email: str = ""
    password: str = ""
    letsencrypt_email: str = ""
    default_websockets: bool = True


@dataclass(frozen=True)
class HealthCheckConfig:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    concurrency: int = DEFAULT_CONCURRENCY
    username: str = ""
    password: str = ""

    def to_settings(self) -> CleanupSettings:
        credentials = (
            Credentials(self.username, self.password) if self.username and self.password else None
        )
        return CleanupSettings(
            timeout_ms=self.timeout_ms, concurrency=self.concurrency, credentials=credentials
        )


@dataclass(frozen=True)
class AppConfig:
    default_domain: str = ""
    cloudflare: CloudflareConfig = field(default_factory=CloudflareConfig)
    nginx_proxy_manager: NginxProxyManagerConfig = field(default_factory=NginxProxyManagerConfig)
    cleanup: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    version: str = CONFIG_VERSION

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        if not isinstance(data, Mapping):
            raise ConfigError(f"Expected a mapping at the top of the config file, got {type(data).__name__}")

        cf = _section(data, "cloudflare")
        npm = _section(data, "nginx_proxy_manager")
        cleanup = _section(data, "cleanup")
        basic_auth = _section(cleanup, "basic_auth", "cleanup.basic_auth")

        domains = cf.get("domains") or []
        if isinstance(domains, str):
            domains = [d.strip() for d in domains.split(",") if d.strip()]
        elif not isinstance(domains, list):
            raise ConfigError(f"cloudflare.domains must be a list, got {type(domains).__name__}")

        return cls(
            version=str(data.get("version") or CONFIG_VERSION),
            default_domain=str(data.get("default_domain") or "").strip(),
            cloudflare=CloudflareConfig(
                api_token=str(cf.get("api_token") or "").strip(),
                domains=[str(d).strip() for d in domains],
                ttl=cf.get("ttl", "auto"),
                default_ip=str(cf.get("default_ip") or "").strip(),
            ),
            nginx_proxy_manager=NginxProxyManagerConfig(
                url=str(npm.get("url") or "http://localhost:81").strip(),
                email=str(npm.get("email") or "").strip(),
                password=str(npm.get("password") or ""),
                letsencrypt_email=str(npm.get("letsencrypt_email") or "").strip(),
                default_websockets=_parse_bool(npm.get("default_websockets"), default=True),
            ),
            cleanup=HealthCheckConfig(
                timeout_ms=_parse_int(cleanup.get("timeout_ms"), DEFAULT_TIMEOUT_MS),
                concurrency=_parse_int(cleanup.get("concurrency"), DEFAULT_CONCURRENCY),
                username=str(basic_auth.get("username") or ""),
                password=str(basic_auth.get("password") or ""),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        cleanup = {
            "timeout_ms": self.cleanup.timeout_ms,
            "concurrency": self.cleanup.concurrency,
        }
        if self.cleanup.username:
            cleanup["basic_auth"] = {
                "username": self.cleanup.username,
                "password": self.cleanup.password,
            }
        return {
            "version": self.version,
            "default_domain": self.default_domain,
            "cloudflare": asdict(self.cloudflare),
            "nginx_proxy_manager": asdict(self.nginx_proxy_manager),
            "cleanup": cleanup,
        }

    def redacted(self) -> Dict[str, Any]:
        """``to_dict`` with secrets masked, for display."""
        data = self.to_dict()
        if data["cloudflare"].get("api_token"):
            data["cloudflare"]["api_token"] = "********"
        if data["nginx_proxy_manager"].get("password"):
            data["nginx_proxy_manager"]["password"] = "********"
        if "basic_auth" in data["cleanup"]:
            data["cleanup"]["basic_auth"]["password"] = "********"
        return data


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _section(data: Mapping[str, Any], key: str, label: Optional[str] = None) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Section '{label or key}' must be a mapping, got {type(value).__name__}")
    return value


def _parse_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid integer setting {value!r}, using {default}")
        return default


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    """Return ``config`` with any values set in ``environ`` applied on top."""
    cf = config.cloudflare
    if environ.get("CLOUDFLARE_API_TOKEN"):
        cf = replace(cf, api_token=environ["CLOUDFLARE_API_TOKEN"].strip())

    npm = config.nginx_proxy_manager
    if environ.get("NPM_URL"):
        npm = replace(npm, url=environ["NPM_URL"].strip())
    if environ.get("NPM_EMAIL"):
        npm = replace(npm, email=environ["NPM_EMAIL"].strip())
    if environ.get("NPM_PASSWORD"):
        npm = replace(npm, password=environ["NPM_PASSWORD"])

    cleanup = config.cleanup
    if environ.get("CLEANUP_TIMEOUT_MS"):
        cleanup = replace(cleanup, timeout_ms=_parse_int(environ["CLEANUP_TIMEOUT_MS"], cleanup.timeout_ms))
    if environ.get("CLEANUP_CONCURRENCY"):
        cleanup = replace(
            cleanup, concurrency=_parse_int(environ["CLEANUP_CONCURRENCY"], cleanup.concurrency)
        )
    if environ.get("HEALTH_CHECK_USERNAME") and environ.get("HEALTH_CHECK_PASSWORD"):
        cleanup = replace(
            cleanup,
            username=environ["HEALTH_CHECK_USERNAME"],
            password=environ["HEALTH_CHECK_PASSWORD"],
        )

    return replace(config, cloudflare=cf, nginx_proxy_manager=npm, cleanup=cleanup)


# =============================================================================
# Config Store
# =============================================================================


class ConfigStore:
    def __init__(self, path: str = CONFIG_PATH):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
        if not self.path.exists():
            raise ConfigNotFoundError(
                f"Configuration file {self.path} not found. Please run 'homelab-proxy init' first."
            )
        try:
            data = yaml.safe_load(self.path.read_text("utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {self.path}: {e}") from e
        config = AppConfig.from_dict(data)
        return apply_env_overrides(config, os.environ if environ is None else environ)

    def save(self, config: AppConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False)
        tmp_path.chmod(0o600)
        tmp_path.replace(self.path)

    def update(self, **changes: Any) -> AppConfig:
        """Load without env overrides, apply top-level ``changes`` and save."""
        config = self.load(environ={})
        updated = replace(config, **changes)
        self.save(updated)
        return updated


# =============================================================================
# Validation
# =============================================================================


def collect_config_errors(config: AppConfig) -> List[str]:
    errors: List[str] = []

    if not config.cloudflare.api_token:
        errors.append("Cloudflare API token is missing")
    if not config.cloudflare.domains:
        errors.append("Cloudflare domains are missing")
    for domain in config.cloudflare.domains:
        error = validate_domain(domain)
        if error:
            errors.append(f"Cloudflare domain '{domain}': {error}")

    npm = config.nginx_proxy_manager
    error = validate_url(npm.url)
    if error:
        errors.append(f"Nginx Proxy Manager URL: {error}")
    error = validate_email(npm.email)
    if error:
        errors.append(f"Nginx Proxy Manager email: {error}")
    if not npm.password:
        errors.append("Nginx Proxy Manager password is missing")

    if not config.default_domain:
        errors.append("Default domain is missing")

    if config.cleanup.timeout_ms <= 0:
        errors.append("cleanup.timeout_ms must be positive")
    if config.cleanup.concurrency < 1:
        errors.append("cleanup.concurrency must be at least 1")

    return errors


def validate_config(config: AppConfig) -> bool:
    """Validate configuration, logging every problem found."""
    errors = collect_config_errors(config)
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        return False
    return True
