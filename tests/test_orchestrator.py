"""Deployment state machine, driven end to end with a fake provider and SSH runner."""

import time

import pytest

from selfhosted.apps import DNSRecord, load_app, load_catalog
from selfhosted.errors import InvalidTransition, UpstreamError
from selfhosted.orchestrator import Deployer, default_tls_scripts, start_deployment
from selfhosted.providers import BaseProvider
from selfhosted.session import (
    DONE_MARKER,
    ERROR_MARKER,
    PTY_CHUNK_MARKER,
    PTY_END_MARKER,
    PTY_SESSION_MARKER,
    SessionStore,
)
from selfhosted.types import DeploymentRequest, Instance, Region, Size

PRIVATE_KEY = "-----BEGIN TEST KEY-----\nabc\n-----END TEST KEY-----"


def make_request(**kwargs) -> DeploymentRequest:
    defaults = dict(app="demo", provider="fake", answers={"admin_email": "admin@example.com"})
    defaults.update(kwargs)
    return DeploymentRequest(**defaults)


@pytest.fixture
def make_deployer(session, demo_app, fake_provider, fake_runner, ptys, no_dns, tmp_path):
    sleeps = []

    def factory(request=None, app=None, provider=None, **kwargs):
        options = dict(
            ptys=ptys,
            key_dir=tmp_path / "keys",
            runner_factory=fake_runner,
            dns_detector=no_dns,
            dns_waiter=lambda domain, ip, log=None: True,
            keygen=lambda: (PRIVATE_KEY, "ssh-rsa AAAATEST selfhosted"),
            sleep=sleeps.append,
        )
        options.update(kwargs)
        return Deployer(
            session,
            request or make_request(),
            app or demo_app,
            provider or fake_provider,
            **options,
        )

    factory.sleeps = sleeps
    return factory


def commands(fake_runner) -> list[str]:
    return [c for r in fake_runner.instances for c in r.commands]


def test_successful_deployment(make_deployer, session, fake_provider, fake_runner, tmp_path):
    request = make_request(domain="app.example.com", email="me@example.com")
    deployer = make_deployer(request)
    deployer.run()

    lines, _ = session.lines()
    assert session.state == "completed"
    assert session.failure is None
    assert lines[-1] == DONE_MARKER
    for state in ["selecting_size", "provisioning", "awaiting_ssh", "installing",
                  "configuring_dns", "issuing_tls", "completed"]:
        assert any(line.endswith(f"-> {state}") for line in lines), state

    created = fake_provider.created[0]
    assert created.size == "small"
    assert created.region == "r1"
    assert created.server_name == "app-example-com"
    assert created.ssh_keys.public_key == "ssh-rsa AAAATEST selfhosted"

    cmds = commands(fake_runner)
    assert len(cmds) == 3
    assert cmds[0].startswith("bash -lc 'set -e\n")
    assert "echo install admin@example.com" in cmds[0]
    assert "certbot -d app.example.com --email me@example.com" in cmds[2]
    assert "Installing for app.example.com" in lines

    assert fake_provider.dns == [
        ("app.example.com", "203.0.113.10", [DNSRecord("A", "app.example.com", "203.0.113.10")])
    ]
    assert "fake DNS: app.example.com -> 203.0.113.10" in lines
    assert "'demo' is ready at https://app.example.com" in lines
    key_file = tmp_path / "keys" / "app-example-com"
    assert key_file.read_text() == PRIVATE_KEY
    assert fake_runner.instances[-1].closed


def test_provision_timeout_fails_session_with_timeout_message(make_deployer, session):
    class NeverReady(BaseProvider):
        name = "slow"
        description = "Slow Cloud"
        default_region = "r1"
        poll_interval = 0.01

        def resolve_auth(self):
            return "token"

        def list_regions(self):
            return [Region("r1", "Region 1")]

        def list_sizes(self, region=None):
            return [Size("s", 2048, 2, 25, price_monthly=5.0)]

        def create_instance(self, request, log=print):
            return Instance(id="i-9", name=request.server_name)

        def instance_status(self, instance):
            return "provisioning", ""

    deployer = make_deployer(provider=NeverReady(), provision_timeout=0.05)
    deployer.run()

    lines, _ = session.lines()
    assert session.state == "failed"
    assert session.failure.kind == "ProvisionTimeout"
    assert any("Timed out" in line for line in lines)
    assert any(line.startswith("Instance left running: id=i-9") for line in lines)
    assert lines[-1].startswith(ERROR_MARKER)
    assert DONE_MARKER not in lines
    assert session.instance.status == "unreachable"


def test_no_matching_size(make_deployer, session, fake_provider):
    fake_provider.sizes = [Size("tiny", 512, 1, 10, price_monthly=4.0)]
    make_deployer().run()

    assert session.failure.kind == "NoMatchingSize"
    assert fake_provider.created == []
    assert "No instance was created" in session.lines()[0]


def test_explicit_size_used_when_offered(make_deployer, fake_provider):
    make_deployer(make_request(size="large")).run()
    assert fake_provider.created[0].size == "large"


def test_explicit_size_not_offered_falls_back_to_selection(make_deployer, session, fake_provider):
    make_deployer(make_request(size="huge")).run()
    assert fake_provider.created[0].size == "small"
    assert any("'huge' is not offered" in line for line in session.lines()[0])


def test_unavailable_region_falls_back_to_default(make_deployer, session, fake_provider):
    make_deployer(make_request(region="mars-1")).run()
    assert fake_provider.created[0].region == "r1"
    assert any("'mars-1' is not available" in line for line in session.lines()[0])


def test_ssh_connect_retries_with_exponential_backoff(make_deployer, session, fake_runner):
    fake_runner.connect_failures = 5
    deployer = make_deployer()
    deployer.run()

    assert session.state == "completed"
    assert make_deployer.sleeps == [2, 4, 8, 15, 15]


def test_ssh_unreachable_when_window_exhausted(make_deployer, session, fake_runner):
    fake_runner.connect_failures = 100
    make_deployer(ssh_timeout=0).run()

    assert session.failure.kind == "SSHUnreachable"
    assert "203.0.113.10" in session.failure.message


def test_ssh_retries_stop_at_the_reachability_window(make_deployer, session, fake_runner):
    fake_runner.connect_failures = 100
    make_deployer(provision_timeout=0, ssh_timeout=300).run()

    assert session.failure.kind == "SSHUnreachable"
    assert "after 1 attempts" in session.failure.message
    assert make_deployer.sleeps == []


def test_command_failure_reports_command_and_tail(make_deployer, session, fake_runner):
    fake_runner.fail_on = "echo start"
    make_deployer().run()

    failure = session.failure
    assert failure.kind == "CommandError"
    assert "echo start" in failure.message
    assert "exit status 2" in failure.message
    assert "boom" in failure.tail
    assert len(failure.tail) <= 20
    assert any(line.startswith("Instance left running: id=i-1 ip=203.0.113.10") for line in session.lines()[0])


def test_dns_left_alone_when_managed_elsewhere(make_deployer, session, fake_provider):
    detector = lambda domain: {
        "provider": "cloudflare", "name": "Cloudflare", "nameservers": ["ada.ns.cloudflare.com"]
    }
    make_deployer(make_request(domain="app.example.com"), dns_detector=detector).run()

    assert session.state == "completed"
    assert fake_provider.dns == []
    assert any("Not touching DNS managed by Cloudflare" in line for line in session.lines()[0])


def test_dns_skip_mode_is_logged(make_deployer, session, fake_provider):
    make_deployer(make_request(domain="app.example.com", dns_mode="skip")).run()
    assert fake_provider.dns == []
    assert any("DNS setup skipped" in line for line in session.lines()[0])


def test_dns_failure_is_noop_failure(make_deployer, session, fake_provider):
    fake_provider.dns_error = UpstreamError("zone not found")
    make_deployer(make_request(domain="app.example.com")).run()

    lines, _ = session.lines()
    assert session.failure.kind == "NoOpFailure"
    assert "zone not found" in session.failure.message
    assert "'demo' is installed and reachable at http://203.0.113.10" in lines


def test_cloudflare_records_use_proxied_flag(make_deployer, session, fake_provider):
    created = []

    class FakeCloudflare:
        def __init__(self, token):
            self.token = token

        def find_zone(self, domain):
            return {"id": "zone-1", "name": "example.com"}

        def create_record(self, zone_id, rtype, name, content, ttl=0, proxied=False):
            created.append((zone_id, rtype, name, content, proxied))

    request = make_request(
        domain="app.example.com",
        dns_mode="cloudflare",
        cloudflare_token="cf-token-0123456789",
        cloudflare_proxied=True,
    )
    make_deployer(request, cloudflare_factory=FakeCloudflare).run()

    assert session.state == "completed"
    assert created == [("zone-1", "A", "app.example.com", "203.0.113.10", True)]
    assert fake_provider.dns == []


def test_tls_skipped_without_domain(make_deployer, session, fake_runner):
    make_deployer().run()

    lines, _ = session.lines()
    assert session.state == "completed"
    assert not any("certbot" in c for c in commands(fake_runner))
    assert "No domain or SSL disabled, skipping TLS" in lines
    assert "'demo' is ready at http://203.0.113.10" in lines


def test_default_tls_flow_for_app_without_tls_steps(make_deployer, session, fake_runner):
    app = load_app("app: plain\nport: 3001\nsteps:\n  - run: echo hi\n")
    request = make_request(app="plain", domain="app.example.com", email="me@example.com")
    make_deployer(request, app=app).run()

    assert session.state == "completed"
    install, packages, site, certificate = commands(fake_runner)
    assert "apt-get install -y nginx" in packages
    assert "proxy_pass http://127.0.0.1:3001;" in site
    assert "certbot --nginx -d app.example.com" in certificate
    assert "--email me@example.com" in certificate


def test_default_tls_scripts_without_email():
    packages, site, certificate = default_tls_scripts("app.example.com", "", 3000)
    assert "--register-unsafely-without-email" in certificate
    assert "ufw allow 443/tcp" in packages
    assert "server_name app.example.com;" in site


def test_dns_not_resolving_fails_tls(make_deployer, session):
    request = make_request(domain="app.example.com", email="me@example.com")
    make_deployer(request, dns_waiter=lambda domain, ip, log=None: False).run()

    assert session.failure.kind == "NoOpFailure"
    assert "does not resolve" in session.failure.message


def test_cancel_is_checked_between_stages(make_deployer, session, fake_provider):
    session.cancel()
    make_deployer().run()

    assert session.failure.kind == "Cancelled"
    assert fake_provider.created == []
    assert any("Cancellation requested" in line for line in session.lines()[0])


def test_non_root_user_gets_sudo(make_deployer, fake_provider, fake_runner):
    fake_provider.ssh_user = "ubuntu"
    make_deployer().run()

    assert fake_runner.instances[-1].user == "ubuntu"
    assert all(c.startswith("sudo -n bash -lc") for c in commands(fake_runner))


def test_tty_step_streams_pty_output_and_auto_answers(make_deployer, session, fake_runner, ptys):
    app = load_app(
        """
app: interactive
steps:
  - name: Installer
    run: ./install.sh
    tty:
      auto_answer:
        - wait_for: "Continue?"
          value: "true"
          delay_ms: 1
"""
    )
    fake_runner.pty_output = [b"Continue? ", "déjà vu\n".encode()]
    make_deployer(make_request(app="interactive"), app=app).run()

    lines, _ = session.lines()
    assert session.state == "completed"
    assert f"{PTY_SESSION_MARKER} {session.id}" in lines
    assert f"{PTY_END_MARKER} {session.id}" in lines
    assert sum(1 for line in lines if line.startswith(PTY_CHUNK_MARKER)) == 2
    chunks, offset = session.pty_chunks(0)
    assert offset == 2
    assert fake_runner.instances[-1].pty.written == [b"y\r"]
    assert session.id not in ptys


def test_illegal_transition_raises(make_deployer):
    deployer = make_deployer()
    with pytest.raises(InvalidTransition):
        deployer.transition("completed")


def test_request_secrets_are_redacted(make_deployer, session):
    make_deployer(make_request(credentials={"token": "do-secret-token-42"}))
    session.append("token is do-secret-token-42")
    assert session.lines()[0][-1] == "token is ***"


def test_start_deployment_runs_on_worker_thread(
    demo_app, fake_provider, fake_runner, no_dns, tmp_path
):
    store = SessionStore()
    session = start_deployment(
        store,
        make_request(),
        demo_app,
        fake_provider,
        key_dir=tmp_path,
        runner_factory=fake_runner,
        dns_detector=no_dns,
        keygen=lambda: (PRIVATE_KEY, "ssh-rsa AAAATEST"),
    )
    deadline = time.monotonic() + 5
    while not session.finished and time.monotonic() < deadline:
        session.wait_for_lines(len(session), timeout=0.1)

    assert store.get(session.id) is session
    assert session.state == "completed"


def test_unanswered_questions_use_defaults(make_deployer, session, fake_runner):
    umami = load_catalog()["umami"]
    make_deployer(make_request(app="umami", answers={}), app=umami).run()

    assert session.state == "completed"
    cmds = commands(fake_runner)
    assert not any("{opts." in c for c in cmds)
    assert any('SECRET=""' in c for c in cmds)


def test_choice_question_defaults_to_default_choice(make_deployer, session, fake_runner):
    app = load_app(
        """
app: choosy
wizard:
  steps:
    application:
      custom_questions:
        - id: edition
          name: Edition
          type: choice
          choices:
            - name: community
              default: true
            - name: enterprise
        - id: tag
          name: Tag
          default: stable
steps:
  - run: echo {opts.edition} {opts.tag} {opts.missing}end
"""
    )
    make_deployer(make_request(app="choosy", answers={"tag": "beta"}), app=app).run()

    assert "echo community beta end" in commands(fake_runner)[0]
