"""Deployment orchestrator: drives one deployment from request to running app.

Each deployment runs on its own worker thread and moves through a fixed
sequence of states. Every transition, command and decision is appended to the
session log, which is the only channel back to the client.
"""

import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from textwrap import dedent
from typing import Callable

from .apps import (
    App,
    Step,
    build_run_command,
    evaluate_condition,
    install_vars,
    parse_duration,
    render_template,
)
from .domains import CloudflareDNS, detect_dns_provider, should_setup_dns, wait_for_dns
from .errors import (
    Cancelled,
    CommandError,
    ConnectError,
    InvalidTransition,
    NoMatchingSize,
    NoOpFailure,
    ProvisionError,
    ProvisionTimeout,
    SelfhostedError,
    SSHUnreachable,
)
from .providers import Provider
from .session import (
    DONE_MARKER,
    ERROR_MARKER,
    PTY_END_MARKER,
    PTY_SESSION_MARKER,
    DeploymentSession,
    PTYRegistry,
    SessionStore,
    Utf8ChunkDecoder,
)
from .sizing import pick_best_size_for_specs, select_region
from .ssh import PTY_TIMEOUT, SSHRunner, generate_keypair, save_private_key
from .types import DeploymentRequest, Instance, SSHKeyPair
from .utils import redact, sanitize_hostname

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"selecting_size", "failed"},
    "selecting_size": {"provisioning", "failed"},
    "provisioning": {"awaiting_ssh", "failed"},
    "awaiting_ssh": {"installing", "failed"},
    "installing": {"configuring_dns", "failed"},
    "configuring_dns": {"issuing_tls", "failed"},
    "issuing_tls": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

PROVISION_TIMEOUT = 300
SSH_TIMEOUT = 300
SSH_BACKOFF_START = 2
SSH_BACKOFF_MAX = 15
KEY_DIR = Path.home() / ".selfhosted" / "keys"


def nginx_site(domain: str, port: int) -> str:
    """Reverse proxy server block for domain -> 127.0.0.1:port."""
    return dedent(f"""
        server {{
            listen 80;
            server_name {domain};

            location / {{
                proxy_pass http://127.0.0.1:{port};
                proxy_http_version 1.1;
                proxy_set_header Upgrade $http_upgrade;
                proxy_set_header Connection 'upgrade';
                proxy_set_header Host $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
                proxy_cache_bypass $http_upgrade;
            }}
        }}
    """).strip()


def default_tls_scripts(domain: str, email: str, port: int) -> list[str]:
    """nginx + certbot HTTP-01 flow for apps that do not ship TLS steps.

    :return: Scripts to run in order: packages and firewall, nginx site, certificate
    """
    contact = f"--email {email}" if email else "--register-unsafely-without-email"
    return [
        "\n".join([
            "apt-get update -y",
            "DEBIAN_FRONTEND=noninteractive apt-get install -y nginx certbot python3-certbot-nginx",
            "ufw allow 80/tcp || true",
            "ufw allow 443/tcp || true",
        ]),
        "\n".join([
            f"cat > /etc/nginx/sites-available/{domain} <<'NGINX'",
            nginx_site(domain, port),
            "NGINX",
            f"ln -sf /etc/nginx/sites-available/{domain} /etc/nginx/sites-enabled/{domain}",
            "rm -f /etc/nginx/sites-enabled/default",
            "nginx -t && systemctl reload nginx",
        ]),
        "\n".join([
            f"certbot --nginx -d {domain} --non-interactive --agree-tos {contact} "
            "--redirect --keep-until-expiring",
            "systemctl enable --now certbot.timer || true",
        ]),
    ]


class _Transcript:
    """Decoded PTY output that auto-answer threads can wait on."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._decoder = Utf8ChunkDecoder()
        self.text = ""
        self.closed = False

    def feed(self, chunk: bytes) -> None:
        with self._cond:
            self.text += self._decoder.decode(chunk)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self.text += self._decoder.flush()
            self.closed = True
            self._cond.notify_all()

    def wait_for(self, predicate: Callable[[str], bool], timeout: float) -> bool:
        with self._cond:
            self._cond.wait_for(lambda: predicate(self.text) or self.closed, timeout=timeout)
            return predicate(self.text)


class Deployer:
    """Runs a single deployment against one provider.

    :param session: Session receiving log lines, state and failure
    :param request: Submitted request; size, keys and server name are filled in here
    :param app: Catalog entry to install
    :param provider: Provider to create the instance with
    :param ptys: Registry exposing PTY stdin of interactive steps
    :param provision_timeout: Window for the instance to become reachable and accept SSH
    :param ssh_timeout: Cap on SSH connection retries within that window
    :param runner_factory: Builds SSH runners, replaced by fakes in tests
    :param dns_detector: Looks up who serves DNS for a domain
    :param dns_waiter: Waits for a domain to resolve to the instance IP
    :param sleep: Used for step sleeps and SSH backoff
    """

    def __init__(
        self,
        session: DeploymentSession,
        request: DeploymentRequest,
        app: App,
        provider: Provider,
        *,
        ptys: PTYRegistry | None = None,
        provision_timeout: float = PROVISION_TIMEOUT,
        ssh_timeout: float = SSH_TIMEOUT,
        key_dir: str | Path = KEY_DIR,
        runner_factory: Callable[..., SSHRunner] = SSHRunner,
        cloudflare_factory: Callable[[str], CloudflareDNS] = CloudflareDNS,
        dns_detector: Callable[[str], dict] = detect_dns_provider,
        dns_waiter: Callable[..., bool] = wait_for_dns,
        keygen: Callable[[], tuple[str, str]] = generate_keypair,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.request = request
        self.app = app
        self.provider = provider
        self.ptys = ptys or PTYRegistry()
        self.provision_timeout = provision_timeout
        self.ssh_timeout = ssh_timeout
        self.key_dir = Path(key_dir)
        self.runner_factory = runner_factory
        self.cloudflare_factory = cloudflare_factory
        self.dns_detector = dns_detector
        self.dns_waiter = dns_waiter
        self.keygen = keygen
        self.sleep = sleep
        self.instance: Instance | None = None
        self.key_path: Path | None = None
        self._runner: SSHRunner | None = None
        self._window_ends = 0.0

        redact.add(request.cloudflare_token)
        for value in request.credentials.values():
            redact.add(str(value))

    def log(self, line: str) -> None:
        self.session.append(line)

    def transition(self, target: str, final_line: str = "") -> None:
        """Move to target, logging the change.

        final_line is appended before the state changes, so readers that stop
        at a terminal state still see it.
        """
        current = self.session.state
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current, target)
        self.log(f"State: {current} -> {target}")
        if final_line:
            self.log(final_line)
        self.session.set_state(target)

    def checkpoint(self, before: str) -> None:
        if self.session.cancelled:
            self.log(f"Cancellation requested; stopping before {before}")
            raise Cancelled(f"Deployment cancelled before {before}")

    @property
    def sudo(self) -> str:
        return "" if self.request.ssh_user == "root" else "sudo -n "

    def run(self) -> None:
        """Run every stage; any error ends the session as failed."""
        self.log(f"Deploying '{self.app.name}' to {self.provider.description}")
        try:
            self.checkpoint("size selection")
            self.select_size()
            self.checkpoint("provisioning")
            self.provision()
            self.checkpoint("waiting for SSH")
            self.await_reachable()
            self.checkpoint("connecting over SSH")
            self._runner = self.connect_ssh()
            self.transition("installing")
            self.install()
            self.checkpoint("DNS setup")
            self.configure_dns()
            self.checkpoint("TLS setup")
            self.issue_tls()
            self.complete()
        except SelfhostedError as e:
            self.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error in session {self.session.id}")
            self.fail(e)
        finally:
            if self._runner is not None:
                self._runner.close()

    def fail(self, exc: Exception) -> None:
        kind = getattr(exc, "kind", "InternalError")
        message = str(exc) or kind
        if isinstance(exc, CommandError) and exc.exit_status >= 0:
            self.log(f"Command exited with status {exc.exit_status}")
        if self.instance is not None:
            self.log(
                f"Instance left running: id={self.instance.id} ip={self.instance.ip or 'unknown'}. "
                f"Destroy it from the {self.provider.description} console if you no longer need it"
            )
            if isinstance(exc, NoOpFailure) and self.instance.ip:
                self.log(f"'{self.app.name}' is installed and reachable at http://{self.instance.ip}")
        else:
            self.log("No instance was created")
        self.log(f"{ERROR_MARKER} {message}")
        self.session.fail(kind, message)

    def select_size(self) -> None:
        self.transition("selecting_size")
        provider = self.provider
        region = select_region(provider.list_regions(), self.request.region, provider.default_region)
        if self.request.region and region != self.request.region:
            self.log(f"Region '{self.request.region}' is not available, using '{region}'")
        specs = self.request.min_specs or self.app.min_specs
        sizes = provider.list_sizes(region)

        size = next((s for s in sizes if s.slug == self.request.size), None) if self.request.size else None
        if self.request.size and size is None:
            self.log(f"Size '{self.request.size}' is not offered in '{region}', selecting one")
        if size is None:
            size = pick_best_size_for_specs(sizes, specs)
        if size is None:
            raise NoMatchingSize(
                f"No size in '{region}' meets {specs.cpus} vCPU / {specs.memory_mb} MB"
                + (f" / {specs.disk_gb} GB" if specs.disk_gb else "")
            )
        price = f", ${size.price_monthly:.2f}/mo" if size.price_monthly else ""
        self.log(f"Selected size '{size.slug}' ({size.vcpus} vCPU, {size.memory_mb} MB{price}) in '{region}'")
        self.request = replace(self.request, region=region, size=size.slug, min_specs=specs)

    def provision(self) -> None:
        self.transition("provisioning")
        name = (
            sanitize_hostname(self.request.server_name or self.request.domain)
            or sanitize_hostname(f"{self.app.name}-server")
        )
        private_key, public_key = self.keygen()
        redact.add(private_key)
        self.request = replace(
            self.request,
            server_name=name,
            ssh_keys=SSHKeyPair(private_key, public_key),
            ssh_user=self.provider.ssh_user,
        )
        self.key_path = save_private_key(self.key_dir / name, private_key)
        self.log(f"SSH key saved to '{self.key_path}'")

        try:
            instance = self.provider.create_instance(self.request, log=self.log)
        except SelfhostedError:
            raise
        except Exception as e:
            raise ProvisionError(f"Unexpected provider error: {e}") from e
        self.instance = instance
        self.session.instance = instance
        self.log(f"Instance '{instance.name}' created (id {instance.id})")

    def await_reachable(self) -> None:
        self.transition("awaiting_ssh")
        self._window_ends = time.monotonic() + self.provision_timeout
        try:
            self.provider.wait_reachable(self.instance, self.provision_timeout, log=self.log)
        except ProvisionTimeout:
            self.log(f"Timed out after {int(self.provision_timeout)}s waiting for the instance")
            raise
        self.log(f"Instance reachable at '{self.instance.ip}'")

    def connect_ssh(self) -> SSHRunner:
        """Connect with exponential backoff.

        Retries stop at whichever comes first: ssh_timeout from the first
        attempt, or the end of the window opened when awaiting_ssh began.

        :raises SSHUnreachable: If no attempt succeeds before the deadline
        """
        deadline = min(time.monotonic() + self.ssh_timeout, self._window_ends)
        delay = SSH_BACKOFF_START
        attempt = 0
        while True:
            attempt += 1
            runner = self.runner_factory(
                self.instance.ip, self.request.ssh_user, self.request.ssh_keys.private_key, log=self.log
            )
            try:
                runner.connect()
            except ConnectError as e:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SSHUnreachable(
                        f"SSH to '{self.instance.ip}' failed after {attempt} attempts: {e}"
                    ) from e
                wait = min(delay, remaining)
                self.log(f"SSH not ready (attempt {attempt}), retrying in {wait:.0f}s")
                self.sleep(wait)
                delay = min(delay * 2, SSH_BACKOFF_MAX)
                self.checkpoint("connecting over SSH")
                continue
            self.log(f"Connected to {self.request.ssh_user}@{self.instance.ip}")
            return runner

    def install(self) -> None:
        variables, _ = install_vars(self.request, self.instance.ip, self.app.questions)
        steps = self.app.install_steps
        for i, step in enumerate(steps, 1):
            self.checkpoint(f"step {i}/{len(steps)}")
            self.run_step(step, variables, f"[{i}/{len(steps)}]")
        self.log(f"'{self.app.name}' installed")

    def run_step(self, step: Step, variables: dict[str, str], prefix: str = "") -> None:
        if step.name:
            self.log(f"{prefix} {step.name}".strip())
        if step.where != "machine":
            self.log(f"Skipping step: unsupported target '{step.where}'")
            return
        if step.log:
            self.log(render_template(step.log, variables))
        if step.sleep:
            try:
                seconds = parse_duration(step.sleep)
            except ValueError as e:
                raise CommandError(f"sleep {step.sleep}", -1, str(e)) from e
            self.log(f"Waiting {step.sleep}")
            self.sleep(seconds)
        cmd = build_run_command(render_template(step.run, variables))
        if not cmd:
            return
        cmd = self.sudo + cmd
        if step.tty:
            self.run_tty(cmd, step, variables)
        else:
            self._runner.run(cmd)

    def run_tty(self, cmd: str, step: Step, variables: dict[str, str]) -> None:
        """Run an interactive step under a PTY.

        Output goes to the session as PTY chunks; client input arrives through
        the PTY registry under the session id. Auto answers are written from a
        helper thread once their prompt appears.
        """
        pty_id = self.session.id
        transcript = _Transcript()

        def on_data(chunk: bytes) -> None:
            self.session.append_pty(chunk)
            transcript.feed(chunk)

        self.log(f"{PTY_SESSION_MARKER} {pty_id}")
        proc = self._runner.run_pty(cmd, on_data)
        self.ptys.register(pty_id, proc)
        answerer = None
        if step.auto_answer:
            answerer = threading.Thread(
                target=self._auto_answer, args=(proc, step, variables, transcript), daemon=True
            )
            answerer.start()
        try:
            proc.wait(PTY_TIMEOUT)
        finally:
            transcript.close()
            self.ptys.close(pty_id)
            if answerer is not None:
                answerer.join(timeout=1)
            self.log(f"{PTY_END_MARKER} {pty_id}")

    def _auto_answer(self, proc, step: Step, variables: dict[str, str], transcript: _Transcript) -> None:
        seen = 0
        for answer in step.auto_answer:
            matched = transcript.wait_for(lambda text: answer.matches(text[seen:]), answer.timeout)
            if not matched:
                if not transcript.closed:
                    self.log(f"No prompt matching '{answer.wait_for}' within {answer.timeout:.0f}s")
                return
            seen = len(transcript.text)
            time.sleep(answer.delay)
            try:
                proc.write(answer.render(variables))
            except OSError as e:
                self.log(f"Could not send answer: {e}")
                return
            self.log(f"Answered prompt '{answer.wait_for}'" if answer.wait_for else "Sent answer")

    def configure_dns(self) -> None:
        self.transition("configuring_dns")
        domain, ip = self.request.domain, self.instance.ip
        if not domain:
            self.log("No domain set, skipping DNS")
            return
        mode = self.request.dns_mode
        if mode == "skip":
            self.log(f"DNS setup skipped; point '{domain}' to '{ip}' yourself")
            return

        detected = self.dns_detector(domain)
        nameservers = ", ".join(detected.get("nameservers") or []) or "none found"
        self.log(f"'{domain}' is served by {detected.get('name', 'Unknown')} ({nameservers})")
        use_cloudflare = mode == "cloudflare" or (
            detected.get("provider") == "cloudflare" and bool(self.request.cloudflare_token)
        )
        target = "cloudflare" if use_cloudflare else self.provider.name
        if not should_setup_dns(mode, target, detected.get("provider", "")):
            self.log(
                f"Not touching DNS managed by {detected.get('name')}; "
                f"create an A record for '{domain}' pointing to '{ip}'"
            )
            return

        records = self.app.records_for(domain, ip)
        try:
            if use_cloudflare:
                cloudflare = self.cloudflare_factory(self.request.cloudflare_token)
                zone = cloudflare.find_zone(domain)
                for r in records:
                    proxied = self.request.cloudflare_proxied if r.proxied is None else r.proxied
                    self.log(f"Creating Cloudflare {r.type} record '{r.name}' -> '{r.content}'")
                    cloudflare.create_record(zone["id"], r.type, r.name, r.content, r.ttl, proxied)
            else:
                self.provider.setup_dns(domain, ip, records, log=self.log)
        except SelfhostedError as e:
            raise NoOpFailure("DNS setup", str(e)) from e
        self.log(f"DNS records created for '{domain}'")

    def issue_tls(self) -> None:
        self.transition("issuing_tls")
        variables, bools = install_vars(self.request, self.instance.ip, self.app.questions)
        steps = self.app.tls_steps
        domain = self.request.domain
        wants_tls = bool(domain and self.request.enable_ssl)
        if not wants_tls:
            self.log("No domain or SSL disabled, skipping TLS")
        elif not self.request.cloudflare_proxied:
            self.log(f"Waiting for '{domain}' to resolve to '{self.instance.ip}'...")
            if not self.dns_waiter(domain, self.instance.ip, log=self.log):
                raise NoOpFailure("TLS", f"'{domain}' does not resolve to '{self.instance.ip}'")

        try:
            if wants_tls and not steps:
                self.log(f"Requesting certificate for '{domain}' with certbot")
                scripts = default_tls_scripts(domain, self.request.email, self.app.port)
                self._runner.run_many([self.sudo + build_run_command(s) for s in scripts])
            for step in steps:
                if not evaluate_condition(step.condition, bools):
                    self.log(f"Skipping '{step.name or step.condition}' ({step.condition} is false)")
                    continue
                self.checkpoint(f"'{step.name}'")
                self.run_step(step, variables)
        except CommandError as e:
            raise NoOpFailure("TLS", str(e)) from e

    def complete(self) -> None:
        ip = self.instance.ip
        domain = self.request.domain
        if domain:
            url = f"https://{domain}" if self.request.enable_ssl else f"http://{domain}"
        else:
            url = f"http://{ip}"
        self.log(f"'{self.app.name}' is ready at {url}")
        self.log(f"SSH: ssh -i {self.key_path} {self.request.ssh_user}@{ip}")
        self.transition("completed", final_line=DONE_MARKER)


def start_deployment(
    store: SessionStore,
    request: DeploymentRequest,
    app: App,
    provider: Provider,
    **kwargs,
) -> DeploymentSession:
    """Create a session and run the deployment on a daemon worker thread.

    :param kwargs: Passed on to Deployer
    :return: The new session, already running
    """
    session = store.create(app=request.app, provider=request.provider)
    deployer = Deployer(session, request, app, provider, **kwargs)
    thread = threading.Thread(target=deployer.run, name=f"deploy-{session.id[:8]}", daemon=True)
    thread.start()
    return session
