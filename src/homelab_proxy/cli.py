#!/usr/bin/env python3
"""homelab-proxy - Homelab subdomain management

Creates subdomains as Cloudflare DNS records plus Nginx Proxy Manager proxy
hosts, and cleans up records whose services are gone.

Commands:
    init       Write the configuration file interactively
    config     Show the current configuration (secrets masked)
    create     Create a DNS record and a proxy host for a subdomain
    list       List DNS records and proxy hosts
    delete     Delete a subdomain's DNS record and proxy host
    check      Probe every CNAME record and report which ones are stale
    cleanup    Probe every CNAME record and remove the stale ones
    schedule   Run cleanup repeatedly (for cron-less homelabs)

See ``homelab_proxy.config`` for the configuration file and environment
variables.
"""

import logging
import time
from typing import Callable, List, Optional

import requests
import typer
import yaml
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from homelab_proxy.cleanup import (
    CleanupOrchestrator,
    CleanupPolicy,
    CleanupResult,
    CleanupSettings,
    CleanupSetupError,
    HealthCheckRun,
    StaleRecord,
    outcome_rows,
    run_health_check,
)
from homelab_proxy.config import (
    AUTO_CLEANUP,
    CONFIG_PATH,
    LOG_LEVEL,
    POLL_INTERVAL_SECONDS,
    WEBHOOK_URL,
    AppConfig,
    CloudflareConfig,
    ConfigError,
    ConfigStore,
    HealthCheckConfig,
    NginxProxyManagerConfig,
    _parse_bool,
    validate_config,
)
from homelab_proxy.health import VERSION, Credentials
from homelab_proxy.observer import LoggingObserver
from homelab_proxy.providers import (
    CloudflareDNSProvider,
    DNSProvider,
    NginxProxyManagerProvider,
    ProviderError,
    ProxyHostProvider,
)
from homelab_proxy.report import HealthReport, write_report
from homelab_proxy.validation import (
    validate_domain,
    validate_email,
    validate_ip_address,
    validate_subdomain,
    validate_target,
    validate_url,
)

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    help="Manage homelab subdomains in Cloudflare and Nginx Proxy Manager.",
    context_settings={"help_option_names": ["-h", "--help"]},
    no_args_is_help=True,
)

# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(config: AppConfig) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    return CloudflareDNSProvider(
        api_token=config.cloudflare.api_token,
        domains=config.cloudflare.domains,
        ttl=config.cloudflare.ttl,
    )


def create_proxy_provider(config: AppConfig) -> ProxyHostProvider:
    """Factory function to create the configured proxy host provider."""
    npm = config.nginx_proxy_manager
    return NginxProxyManagerProvider(
        url=npm.url,
        email=npm.email,
        password=npm.password,
        default_websockets=npm.default_websockets,
    )


# =============================================================================
# Helpers
# =============================================================================


def _load_config(config_path: str, validate: bool = True) -> AppConfig:
    try:
        config = ConfigStore(config_path).load()
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    if validate and not validate_config(config):
        logger.error("Invalid configuration. Please run 'homelab-proxy init' first.")
        raise typer.Exit(1)
    return config


def _resolve_settings(
    config: AppConfig, timeout_ms: Optional[int], concurrency: Optional[int]
) -> CleanupSettings:
    settings = config.cleanup.to_settings()
    return CleanupSettings(
        timeout_ms=settings.timeout_ms if timeout_ms is None else timeout_ms,
        concurrency=settings.concurrency if concurrency is None else concurrency,
        credentials=settings.credentials,
    )


def prompt_credentials(hostname: str) -> Optional[Credentials]:
    """Ask the user for basic-auth credentials for ``hostname``."""
    if not typer.confirm(f"{hostname} requires authentication. Enter credentials?", default=False):
        return None
    username = typer.prompt(f"Username for {hostname}")
    password = typer.prompt(f"Password for {hostname}", hide_input=True)
    return Credentials(username, password)


def _prompt_valid(message: str, validator: Callable[[str], Optional[str]], **kwargs) -> str:
    while True:
        value = typer.prompt(message, **kwargs)
        error = validator(value)
        if not error:
            return value
        console.print(f"[red]{error}[/red]")


def _print_report(report: HealthReport) -> None:
    console.print("\n[bold cyan]=== Health Check Summary ===[/bold cyan]")
    console.print(f"Total records: {report.total}")
    console.print(f"[green]Healthy records: {report.healthy_count}[/green]")
    console.print(f"[yellow]Stale records: {report.stale_count}[/yellow]")
    console.print(f"Health percentage: {report.percentage_text}")


def _print_stale(stale: List[StaleRecord]) -> None:
    table = Table(title="Stale Records")
    for column in ("Domain", "Target", "Error", "Status"):
        table.add_column(column)
    for s in stale:
        table.add_row(s.name, s.record.content, s.reason, "STALE")
    console.print(table)


def _print_outcomes(result: CleanupResult) -> None:
    table = Table(title="Cleanup Results")
    for column in ("Domain", "Target", "Error", "Result"):
        table.add_column(column)
    for row in outcome_rows(result):
        table.add_row(*row)
    console.print(table)


def _run_check(
    config: AppConfig, settings: CleanupSettings, domain: Optional[str], interactive_auth: bool
) -> HealthCheckRun:
    dns_provider = create_dns_provider(config)
    return run_health_check(
        dns_provider,
        settings,
        auth_provider=prompt_credentials if interactive_auth else None,
        observer=LoggingObserver(),
        domain=domain,
    )


def send_notification(webhook_url: str, payload: dict) -> bool:
    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
        response.raise_for_status()
        logger.info("Notification sent successfully")
        return True
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to send notification: {e}")
        return False


# =============================================================================
# Commands
# =============================================================================


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"homelab-proxy {VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True, help="Show version"),
    ] = None,
) -> None:
    """Manage homelab subdomains in Cloudflare and Nginx Proxy Manager."""


@app.command()
def init(
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Write the configuration file interactively."""
    domain = _prompt_valid("Primary domain name (managed by Cloudflare)", validate_domain)
    api_token = typer.prompt("Cloudflare API token", hide_input=True)
    ttl = typer.prompt('DNS TTL (seconds or "auto")', default="auto")
    npm_url = _prompt_valid("Nginx Proxy Manager URL", validate_url, default="http://localhost:81")
    npm_email = _prompt_valid("Nginx Proxy Manager email", validate_email)
    npm_password = typer.prompt("Nginx Proxy Manager password", hide_input=True)
    letsencrypt_email = typer.prompt("Let's Encrypt email", default=npm_email)
    websockets = typer.confirm("Enable WebSocket support by default for new proxy hosts?", default=True)

    config = AppConfig(
        default_domain=domain,
        cloudflare=CloudflareConfig(api_token=api_token, domains=[domain], ttl=ttl),
        nginx_proxy_manager=NginxProxyManagerConfig(
            url=npm_url,
            email=npm_email,
            password=npm_password,
            letsencrypt_email=letsencrypt_email,
            default_websockets=websockets,
        ),
        cleanup=HealthCheckConfig(),
    )
    store = ConfigStore(config_path)
    store.save(config)
    logger.info(f"Configuration saved to {store.path}")


@app.command("config")
def show_config(
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Show the current configuration with secrets masked."""
    config = _load_config(config_path, validate=False)
    console.print("[cyan]Current Configuration:[/cyan]")
    typer.echo(yaml.safe_dump(config.redacted(), sort_keys=False))


@app.command()
def create(
    subdomain: Annotated[Optional[str], typer.Option("--subdomain", "-s", help="Subdomain name")] = None,
    target: Annotated[Optional[str], typer.Option("--target", "-t", help="Target host:port")] = None,
    domain: Annotated[Optional[str], typer.Option("--domain", "-d", help="Domain name")] = None,
    record_type: Annotated[str, typer.Option("--record-type", help="DNS record type (CNAME or A)")] = "CNAME",
    dns_target: Annotated[
        Optional[str],
        typer.Option("--dns-target", help="IP for A records; CNAME target (defaults to the apex domain)"),
    ] = None,
    certificate_id: Annotated[int, typer.Option("--certificate-id", help="Existing NPM certificate ID")] = 0,
    force_ssl: Annotated[bool, typer.Option("--force-ssl", help="Force SSL redirect")] = False,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Create a DNS record and a proxy host for a subdomain."""
    config = _load_config(config_path)

    subdomain = subdomain or _prompt_valid("Subdomain name", validate_subdomain)
    target = target or _prompt_valid("Target (host:port)", validate_target)
    domain = domain or config.default_domain
    record_type = record_type.upper()

    for error in (validate_subdomain(subdomain), validate_target(target), validate_domain(domain)):
        if error:
            logger.error(error)
            raise typer.Exit(1)
    if record_type not in ("CNAME", "A"):
        logger.error(f"Unsupported record type: {record_type}. Use CNAME or A")
        raise typer.Exit(1)
    if record_type == "A":
        dns_target = dns_target or config.cloudflare.default_ip or _prompt_valid(
            "DNS target (IP address)", validate_ip_address
        )
        error = validate_ip_address(dns_target)
        if error:
            logger.error(error)
            raise typer.Exit(1)

    dns_provider = create_dns_provider(config)
    proxy_provider = create_proxy_provider(config)

    logger.info(f"Creating subdomain: {subdomain}.{domain}")
    try:
        if record_type == "CNAME":
            record = dns_provider.create_cname_record(subdomain, domain, dns_target)
        else:
            record = dns_provider.create_a_record(subdomain, domain, dns_target)
        logger.info(f"{record_type} record created: {record.name} -> {record.content}")

        proxy_provider.create_proxy_host(
            subdomain, domain, target, force_ssl=force_ssl, certificate_id=certificate_id
        )
        logger.info("Proxy host created successfully!")
    except ProviderError as e:
        logger.error(f"Failed to create configuration: {e}")
        raise typer.Exit(1)


@app.command("list")
def list_all(
    domain: Annotated[Optional[str], typer.Option("--domain", "-d", help="Only this domain")] = None,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """List DNS records and proxy hosts."""
    config = _load_config(config_path)
    try:
        logger.info("Fetching DNS records...")
        records = create_dns_provider(config).list_records(domain)
        logger.info("Fetching proxy hosts...")
        hosts = create_proxy_provider(config).list_proxy_hosts()
    except ProviderError as e:
        logger.error(f"Failed to list configurations: {e}")
        raise typer.Exit(1)

    dns_table = Table(title="DNS Records")
    for column in ("Name", "Type", "Content", "Proxied"):
        dns_table.add_column(column)
    for record in records:
        dns_table.add_row(record.name, record.type, record.content, "yes" if record.proxied else "no")
    console.print(dns_table)

    host_table = Table(title="Proxy Hosts")
    for column in ("ID", "Domains", "Target", "SSL", "Enabled"):
        host_table.add_column(column)
    for host in hosts:
        host_table.add_row(
            str(host.id),
            ", ".join(host.domains),
            host.target,
            "yes" if host.ssl else "no",
            "yes" if host.enabled else "no",
        )
    console.print(host_table)


@app.command()
def delete(
    subdomain: Annotated[Optional[str], typer.Option("--subdomain", "-s", help="Subdomain name")] = None,
    domain: Annotated[Optional[str], typer.Option("--domain", "-d", help="Domain name")] = None,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Delete a subdomain's DNS record and proxy host."""
    config = _load_config(config_path)
    subdomain = subdomain or typer.prompt("Subdomain name to delete")
    domain = domain or config.default_domain

    logger.info(f"Deleting subdomain: {subdomain}.{domain}")
    try:
        create_dns_provider(config).delete_record(subdomain, domain)
        logger.info("DNS record deleted successfully!")
        create_proxy_provider(config).delete_proxy_host(subdomain, domain)
        logger.info("Proxy host deleted successfully!")
    except ProviderError as e:
        logger.error(f"Failed to delete configuration: {e}")
        raise typer.Exit(1)


@app.command()
def check(
    timeout: Annotated[Optional[int], typer.Option("--timeout", min=1, help="HTTP timeout in milliseconds")] = None,
    concurrency: Annotated[Optional[int], typer.Option("--concurrency", min=1, help="Probes run at once")] = None,
    domain: Annotated[Optional[str], typer.Option("--domain", "-d", help="Only this domain")] = None,
    output: Annotated[Optional[str], typer.Option("--output", "-o", help="Write a JSON report here")] = None,
    prompt_auth: Annotated[
        bool, typer.Option("--prompt-auth/--no-prompt-auth", help="Ask for credentials on 401")
    ] = False,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Probe every CNAME record and report which ones are stale."""
    config = _load_config(config_path)
    settings = _resolve_settings(config, timeout, concurrency)
    try:
        run = _run_check(config, settings, domain, prompt_auth)
    except ProviderError as e:
        logger.error(f"Health check failed: {e}")
        raise typer.Exit(1)

    _print_report(run.report)
    if run.stale:
        _print_stale(run.stale)
    if output:
        path = write_report(run.report, output)
        logger.info(f"Health report saved to {path}")


@app.command()
def cleanup(
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Show what would be removed")] = False,
    auto_remove: Annotated[
        bool, typer.Option("--auto-remove", help="Remove stale records without prompting")
    ] = False,
    timeout: Annotated[Optional[int], typer.Option("--timeout", min=1, help="HTTP timeout in milliseconds")] = None,
    concurrency: Annotated[Optional[int], typer.Option("--concurrency", min=1, help="Probes run at once")] = None,
    domain: Annotated[Optional[str], typer.Option("--domain", "-d", help="Only this domain")] = None,
    output: Annotated[Optional[str], typer.Option("--output", "-o", help="Write a JSON report here")] = None,
    prompt_auth: Annotated[
        bool, typer.Option("--prompt-auth/--no-prompt-auth", help="Ask for credentials on 401")
    ] = True,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Check every CNAME record and remove the stale ones."""
    config = _load_config(config_path)
    settings = _resolve_settings(config, timeout, concurrency)

    if dry_run:
        policy = CleanupPolicy.DRY_RUN
    elif auto_remove:
        policy = CleanupPolicy.AUTO_REMOVE
    else:
        policy = CleanupPolicy.CONFIRM

    logger.info("Starting cleanup process...")
    try:
        run = _run_check(config, settings, domain, prompt_auth and policy != CleanupPolicy.AUTO_REMOVE)
    except ProviderError as e:
        logger.error(f"Cleanup failed: {e}")
        raise typer.Exit(1)

    _print_report(run.report)
    if output:
        write_report(run.report, output)
        logger.info(f"Health report saved to {output}")

    if not run.stale:
        logger.info("No stale records found. Nothing to clean up!")
        return

    _print_stale(run.stale)
    if policy == CleanupPolicy.DRY_RUN:
        logger.info("Dry run mode - no changes will be made")

    orchestrator = CleanupOrchestrator(
        dns_provider=create_dns_provider(config),
        proxy_provider=create_proxy_provider(config),
        confirm=lambda message: typer.confirm(message, default=False),
        observer=LoggingObserver(),
    )
    try:
        result = orchestrator.cleanup(run.stale, policy)
    except CleanupSetupError as e:
        logger.error(f"Cleanup failed: {e}")
        raise typer.Exit(1)

    if result.cancelled:
        logger.info("Cleanup cancelled by user")
    elif policy != CleanupPolicy.DRY_RUN:
        _print_outcomes(result)


def run_scheduled_cleanup(config: AppConfig, auto_cleanup: bool, webhook_url: str) -> CleanupResult:
    """One scheduled pass: check, then remove only if ``auto_cleanup`` is on."""
    settings = config.cleanup.to_settings()
    run = _run_check(config, settings, None, interactive_auth=False)
    logger.info(f"Found {len(run.stale)} stale records")

    policy = CleanupPolicy.AUTO_REMOVE if auto_cleanup else CleanupPolicy.DRY_RUN
    if not auto_cleanup and run.stale:
        logger.info("Auto-cleanup is disabled. Set AUTO_CLEANUP=true to enable automatic removal.")

    orchestrator = CleanupOrchestrator(
        dns_provider=create_dns_provider(config),
        proxy_provider=create_proxy_provider(config),
        observer=LoggingObserver(),
    )
    result = orchestrator.cleanup(run.stale, policy)

    if webhook_url and result.removed_count > 0:
        send_notification(
            webhook_url,
            {
                "message": f"Homelab Proxy Helper: Cleaned up {result.removed_count} stale records",
                "records": [{"name": s.name, "error": s.reason} for s in run.stale],
            },
        )
    return result


@app.command()
def schedule(
    once: Annotated[bool, typer.Option("--once", help="Run a single pass and exit")] = False,
    interval: Annotated[
        int, typer.Option("--interval", help="Seconds between passes")
    ] = POLL_INTERVAL_SECONDS,
    config_path: Annotated[str, typer.Option("--config", "-c", help="Config file path")] = CONFIG_PATH,
) -> None:
    """Run cleanup repeatedly. Removal only happens with AUTO_CLEANUP=true."""
    config = _load_config(config_path)
    auto_cleanup = _parse_bool(AUTO_CLEANUP, default=False)
    logger.info(f"Scheduled cleanup: auto-remove {'enabled' if auto_cleanup else 'disabled'}")
    if not once:
        logger.info(f"Poll interval: {interval}s")

    try:
        while True:
            try:
                run_scheduled_cleanup(config, auto_cleanup, WEBHOOK_URL)
            except (ProviderError, CleanupSetupError) as e:
                logger.error(f"Scheduled cleanup failed: {e}")
                if WEBHOOK_URL:
                    send_notification(
                        WEBHOOK_URL,
                        {"message": f"Homelab Proxy Helper: Cleanup failed - {e}", "error": True},
                    )
                if once:
                    raise typer.Exit(1)
            if once:
                return
            time.sleep(max(60, interval))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
