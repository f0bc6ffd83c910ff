"""Shared fixtures: fake provider and SSH runner, plus the live-cloud option."""

import pytest

from selfhosted.apps import load_app
from selfhosted.errors import AuthError, CommandError, ConnectError
from selfhosted.session import DeploymentSession, PTYRegistry
from selfhosted.types import DeploymentRequest, Instance, Region, Size

APP_YAML = """
app: demo
description: Demo app
min_spec: {cpu: 1, ram: 1GB, disk: 20GB}
port: 8080
wizard:
  steps:
    application:
      custom_questions:
        - id: admin_email
          name: Admin email
          type: text
steps:
  - name: Install
    log: "Installing for {opts.Domain}"
    run: echo install {opts.admin_email}
  - name: Start
    run: echo start
  - name: Certificate
    if: opts.EnableSSL && opts.Email
    run: certbot -d {opts.Domain} --email {opts.Email}
"""


def pytest_addoption(parser):
    parser.addoption(
        "--provider",
        default=None,
        help="Cloud provider for integration tests (e.g. vultr); integration tests are skipped without it",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--provider"):
        return
    skip = pytest.mark.skip(reason="needs --provider")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def provider_name(request):
    return request.config.getoption("--provider")


class FakeProvider:
    name = "fake"
    description = "Fake Cloud"
    default_region = "r1"
    needs_config = False
    ssh_user = "root"

    def __init__(self, sizes=None, regions=None, ip="203.0.113.10"):
        self.sizes = sizes if sizes is not None else [
            Size("small", 1024, 1, 25, price_monthly=6.0),
            Size("large", 4096, 2, 80, price_monthly=24.0),
        ]
        self.regions = regions if regions is not None else [Region("r1", "Region 1"), Region("r2", "Region 2")]
        self.ip = ip
        self.created: list[DeploymentRequest] = []
        self.created_with: list[dict] = []
        self.dns: list[tuple] = []
        self.config: dict = {}
        self.auth_error: Exception | None = None
        self.wait_error: Exception | None = None
        self.dns_error: Exception | None = None

    def configure(self, config):
        self.config.update(config)

    def resolve_auth(self):
        if self.auth_error:
            raise self.auth_error
        return "token"

    def has_credentials(self):
        try:
            self.resolve_auth()
        except AuthError:
            return False
        return True

    def info(self):
        return {"name": self.name, "description": self.description, "needs_config": self.needs_config}

    def list_regions(self):
        if self.auth_error:
            raise self.auth_error
        return self.regions

    def list_sizes(self, region=None):
        if self.auth_error:
            raise self.auth_error
        return self.sizes

    def create_instance(self, request, log=print):
        self.created.append(request)
        self.created_with.append(dict(self.config))
        log(f"creating {request.server_name}")
        return Instance(id="i-1", name=request.server_name, region=request.region)

    def wait_reachable(self, instance, timeout, log=print):
        if self.wait_error:
            raise self.wait_error
        instance.ip = self.ip
        instance.status = "ready"
        return instance

    def setup_dns(self, domain, ip, records=None, log=print):
        if self.dns_error:
            raise self.dns_error
        log(f"fake DNS: {domain} -> {ip}")
        self.dns.append((domain, ip, records))

    def destroy_instance(self, instance):
        pass


class FakePTY:
    def __init__(self, on_data, output: list[bytes], exit_status=0):
        self.written: list[bytes] = []
        self.closed = False
        self._on_data = on_data
        self._output = output
        self._exit_status = exit_status

    def write(self, data):
        self.written.append(data)

    def close(self):
        self.closed = True

    def wait(self, timeout=None):
        for chunk in self._output:
            self._on_data(chunk)
        if self._exit_status:
            raise CommandError("tty", self._exit_status)


class FakeRunner:
    """Stands in for SSHRunner; class attributes script behaviour per test."""

    instances: list["FakeRunner"] = []
    connect_failures = 0
    fail_on = ""
    pty_output: list[bytes] = []

    def __init__(self, host, user, private_key, log=print):
        self.host = host
        self.user = user
        self.private_key = private_key
        self.log = log
        self.commands: list[str] = []
        self.closed = False
        self.pty = None
        FakeRunner.instances.append(self)

    def connect(self):
        if FakeRunner.connect_failures > 0:
            FakeRunner.connect_failures -= 1
            raise ConnectError("connection refused")

    def run(self, cmd):
        self.commands.append(cmd)
        self.log(f"Running: {cmd}")
        if FakeRunner.fail_on and FakeRunner.fail_on in cmd:
            self.log("boom")
            raise CommandError(cmd, 2, "boom")

    def run_many(self, cmds):
        for cmd in cmds:
            self.run(cmd)

    def run_pty(self, cmd, on_data):
        self.commands.append(cmd)
        self.pty = FakePTY(on_data, FakeRunner.pty_output)
        return self.pty

    def close(self):
        self.closed = True


@pytest.fixture
def fake_runner():
    FakeRunner.instances = []
    FakeRunner.connect_failures = 0
    FakeRunner.fail_on = ""
    FakeRunner.pty_output = []
    yield FakeRunner
    FakeRunner.instances = []


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def demo_app():
    return load_app(APP_YAML, source="demo.yaml")


@pytest.fixture
def session():
    return DeploymentSession(app="demo", provider="fake")


@pytest.fixture
def ptys():
    return PTYRegistry()


@pytest.fixture
def no_dns():
    return lambda domain: {"provider": "", "name": "Unknown", "nameservers": []}
