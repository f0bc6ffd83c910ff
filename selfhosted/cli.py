#!/usr/bin/env python3
"""Deploy self-hosted apps to cloud VMs.

Usage: selfhosted <command> [options]

Examples:
    selfhosted serve
    selfhosted apps
    selfhosted sizes digitalocean --region fra1
    selfhosted deploy umami digitalocean --domain analytics.example.com --email me@example.com
    selfhosted dns check analytics.example.com
"""

import sys

import cyclopts
import uvicorn
from rich.console import Console
from rich.table import Table

from .apps import load_catalog
from .client import ApiClient
from .config import Settings
from .domains import detect_dns_provider, resolve_dns_a, wait_for_dns
from .errors import SelfhostedError
from .orchestrator import start_deployment
from .providers import PROVIDERS, get_provider
from .server import DeployBody, build_request, create_app
from .session import (
    DONE_MARKER,
    ERROR_MARKER,
    PTY_CHUNK_MARKER,
    PTY_END_MARKER,
    PTY_SESSION_MARKER,
    SessionStore,
    Utf8ChunkDecoder,
)
from .utils import UVICORN_LOG_CONFIG, error, log, setup_logging

app = cyclopts.App(name="selfhosted", help="Deploy self-hosted apps to cloud VMs", sort_key=None)
dns_app = cyclopts.App(name="dns", help="Inspect and verify DNS for a domain", sort_key=1)
app.command(dns_app)

console = Console()


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        error(str(e))


def _provider(name: str):
    try:
        return get_provider(name, terraform_dir=_settings().terraform_dir)
    except ValueError as e:
        error(str(e))


class _Printer:
    """Prints session log lines, decoding PTY chunk markers to raw output.

    :param echo: Print plain lines; off when they already reach the logger
    """

    def __init__(self, echo: bool = True) -> None:
        self.echo = echo
        self.decoder = Utf8ChunkDecoder()
        self.failed = False
        self.done = False

    def __call__(self, line: str) -> None:
        if line.startswith(PTY_CHUNK_MARKER):
            sys.stdout.write(self.decoder.decode_base64(line[len(PTY_CHUNK_MARKER):].strip()))
            sys.stdout.flush()
        elif line.startswith(PTY_END_MARKER):
            sys.stdout.write(self.decoder.flush() + "\n")
        elif line.startswith(PTY_SESSION_MARKER):
            return
        elif line.startswith(ERROR_MARKER):
            self.failed = True
        elif line == DONE_MARKER:
            self.done = True
        elif self.echo:
            console.print(line, markup=False, highlight=False)


@app.command
def serve(*, host: str | None = None, port: int | None = None):
    """Run the HTTP API for the wizard client.

    :param host: Bind address (default: SELFHOSTED_HOST or 127.0.0.1)
    :param port: Port (default: SELFHOSTED_PORT or 8080)
    """
    settings = _settings()
    setup_logging(settings.log_level)
    log(f"Serving API on 'http://{host or settings.host}:{port or settings.port}'")
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_config=UVICORN_LOG_CONFIG,
    )


@app.command
def apps():
    """List apps in the catalog with their minimum specs."""
    table = Table("App", "Description", "CPU", "Memory", "Disk", "Providers")
    catalog = load_catalog()
    for name in sorted(catalog):
        a = catalog[name]
        table.add_row(
            a.name,
            a.description,
            str(a.min_specs.cpus),
            f"{a.min_specs.memory_mb} MB",
            f"{a.min_specs.disk_gb} GB",
            ", ".join(a.providers) or "any",
        )
    console.print(table)


@app.command
def providers():
    """List providers and whether credentials resolve."""
    table = Table("Provider", "Description", "Credentials")
    for name in sorted(PROVIDERS):
        p = get_provider(name)
        table.add_row(name, p.description, "yes" if p.has_credentials() else "no")
    console.print(table)


@app.command
def regions(provider: str):
    """List regions offered by a provider.

    :param provider: Provider name (digitalocean, vultr, scaleway, upcloud, gcp, aws)
    """
    p = _provider(provider)
    try:
        items = p.list_regions()
    except SelfhostedError as e:
        error(f"{e.kind}: {e}")
    for r in items:
        console.print(f"{r.slug:<16} {r.name}", markup=False)


@app.command
def sizes(provider: str, *, region: str | None = None):
    """List sizes offered by a provider, cheapest first.

    :param provider: Provider name
    :param region: Only sizes available in this region
    """
    p = _provider(provider)
    try:
        items = p.list_sizes(region)
    except SelfhostedError as e:
        error(f"{e.kind}: {e}")
    table = Table("Size", "vCPU", "Memory", "Disk", "$/month")
    for s in sorted(items, key=lambda s: (s.price_monthly, s.vcpus, s.memory_mb)):
        table.add_row(
            s.slug,
            str(s.vcpus),
            f"{s.memory_mb} MB",
            f"{s.disk_gb} GB" if s.disk_gb else "-",
            f"{s.price_monthly:.2f}" if s.price_monthly else "-",
        )
    console.print(table)


@app.command
def deploy(
    app_name: str,
    provider: str,
    *,
    region: str = "",
    size: str = "",
    domain: str = "",
    server_name: str = "",
    email: str = "",
    no_ssl: bool = False,
    dns_mode: str = "auto",
    cloudflare_proxied: bool = False,
    answer: list[str] | None = None,
    backend_url: str | None = None,
):
    """Deploy an app and follow its log until it finishes.

    Runs in-process unless a backend URL is given (or SELFHOSTED_BACKEND_URL
    is set), in which case the deployment runs on that server.

    :param app_name: App from the catalog
    :param provider: Provider name
    :param region: Region slug (default: provider default)
    :param size: Size slug (default: cheapest meeting the app's minimum)
    :param domain: Domain to point at the server
    :param server_name: Server name (default: derived from domain or app)
    :param email: Contact email for the TLS certificate
    :param no_ssl: Skip TLS issuance
    :param dns_mode: auto, skip, force or cloudflare
    :param cloudflare_proxied: Create proxied Cloudflare records
    :param answer: Wizard answers as id=value, repeatable
    :param backend_url: Run on a remote selfhosted server
    """
    settings = _settings()
    setup_logging(settings.log_level)
    answers = {}
    for item in answer or []:
        key, sep, value = item.partition("=")
        if not sep:
            error(f"Invalid answer '{item}', expected id=value")
        answers[key.strip()] = value
    body = DeployBody(
        app=app_name,
        provider=provider,
        region=region,
        size=size,
        domain=domain,
        server_name=server_name,
        email=email,
        enable_ssl=not no_ssl,
        dns_mode=dns_mode,
        cloudflare_proxied=cloudflare_proxied,
        answers=answers,
    )
    printer = _Printer()
    backend_url = backend_url or settings.backend_url

    try:
        if backend_url:
            with ApiClient(backend_url) as client:
                session_id = client.deploy(**body.model_dump(by_alias=True))
                log(f"Session '{session_id}' started on '{backend_url}'")
                for line in client.events(session_id):
                    printer(line)
        else:
            catalog = load_catalog()
            if app_name not in catalog:
                error(f"Unknown app '{app_name}'. Available: {', '.join(sorted(catalog))}")
            selected = catalog[app_name]
            if not selected.supports(provider):
                error(f"'{app_name}' cannot be deployed to '{provider}'")
            request = build_request(body, selected, settings)
            printer.echo = False
            session = start_deployment(
                SessionStore(),
                request,
                selected,
                _provider(provider),
                provision_timeout=settings.provision_timeout,
                ssh_timeout=settings.ssh_timeout,
            )
            offset = 0
            while True:
                lines, offset = session.lines(offset)
                for line in lines:
                    printer(line)
                if not lines and session.finished:
                    break
                session.wait_for_lines(offset, timeout=1)
    except SelfhostedError as e:
        error(f"{e.kind}: {e}")
    except ValueError as e:
        error(str(e))
    except KeyboardInterrupt:
        error("Interrupted; the server may still be provisioning")

    if printer.failed or not printer.done:
        error("Deployment failed")
    log("Deployment finished")


@dns_app.command(name="check")
def dns_check(domain: str):
    """Show who serves DNS for a domain.

    :param domain: Domain name (e.g., app.example.com)
    """
    detected = detect_dns_provider(domain)
    console.print(f"Provider: {detected['name']}", markup=False)
    for ns in detected["nameservers"]:
        console.print(f"  {ns}", markup=False)
    current = resolve_dns_a(domain)
    console.print(f"A record: {current or 'none'}", markup=False)


@dns_app.command(name="verify")
def dns_verify(domain: str, ip: str, *, retries: int = 30, delay: float = 10):
    """Wait until a domain resolves to an IP.

    :param domain: Domain name
    :param ip: Expected IPv4 address
    :param retries: Number of lookups before giving up
    :param delay: Seconds between lookups
    """
    setup_logging()
    if not wait_for_dns(domain, ip, retries=retries, delay=delay):
        error(f"'{domain}' does not resolve to '{ip}'")


def main():
    app()


if __name__ == "__main__":
    main()
