"""App catalog: YAML app definitions and the install step DSL.

Each app lives in ``selfhosted/catalog/<app>.yaml``. Steps without an ``if``
run during installation; steps with an ``if`` condition run during the TLS
phase when the condition holds. A minimal definition::

    app: umami
    description: Privacy-friendly web analytics
    min_spec: {cpu: 1, ram: 2GB, disk: 20GB}
    steps:
      - name: Start containers
        run: docker compose up -d
"""

import re
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from .types import AppInfo, DeploymentRequest, Specs, WizardQuestion
from .utils import slugify

DEFAULT_CPUS = 1
DEFAULT_MEMORY_MB = 1024
DEFAULT_DISK_GB = 20
DEFAULT_DOMAIN_HINT = "Example: app.your-domain.com"
DEFAULT_APP_PORT = 3000
DEFAULT_ANSWER_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_ANSWER_DELAY_MS = 350

_SPEC_KEYS = {
    "app", "description", "os", "domain_hint", "min_spec", "providers",
    "dns", "wizard", "steps", "port",
}
_STEP_KEYS = {"name", "in", "if", "run", "tty", "sleep", "log"}
_ANSWER_KEYS = {"value", "wait_for", "wait_for_regex", "timeout_ms", "delay_ms"}
_RECORD_KEYS = {"type", "name", "content", "ttl", "proxied"}
_QUESTION_KEYS = {"id", "name", "type", "default", "required", "choices"}

_duration = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_ansi_osc = re.compile(r"\x1b\][^\x07]*(\x07|\x1b\\)")
_ansi_csi = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_control = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_placeholder = re.compile(r"\{opts\.[A-Za-z0-9_.-]+\}")


def _check_keys(data: dict, allowed: set[str], where: str) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping")
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"{where}: unknown field(s) {', '.join(sorted(unknown))}")


def _parse_size(value: Any, unit_mb: bool) -> int:
    text = str(value).strip().lower()
    if not text:
        return 0
    for suffix, to_mb, to_gb in (("gib", 1024, 1), ("gb", 1024, 1), ("mb", 1, 1 / 1024)):
        if text.endswith(suffix):
            number = int(text[: -len(suffix)].strip() or 0)
            return int(number * (to_mb if unit_mb else to_gb))
    return int(text)


def parse_size_to_mb(value: Any) -> int:
    """Parse '2GB', '512mb', '1gib' or a bare number of MB."""
    return _parse_size(value, unit_mb=True)


def parse_size_to_gb(value: Any) -> int:
    """Parse '40GB', '2048mb' or a bare number of GB."""
    return _parse_size(value, unit_mb=False)


def parse_duration(value: Any) -> float:
    """Parse a sleep duration into seconds: '30', '30s', '2m', '1h', '500ms'.

    :raises ValueError: On anything else
    """
    match = _duration.match(str(value).strip().lower())
    if not match:
        raise ValueError(f"invalid sleep duration: {value}")
    number, unit = float(match.group(1)), match.group(2) or "s"
    return number * {"ms": 0.001, "s": 1, "m": 60, "h": 3600}[unit]


def render_template(text: str, variables: dict[str, str]) -> str:
    """Replace each ``{opts.Name}`` key in text with its value.

    Placeholders with no value render as an empty string.
    """
    return _placeholder.sub(lambda m: variables.get(m.group(0), ""), text)


def evaluate_condition(expr: str, bools: dict[str, bool]) -> bool:
    """Evaluate ``a || b && !c`` style conditions. Unknown names are false."""
    return any(
        all(_evaluate_token(token.strip(), bools) for token in part.split("&&"))
        for part in expr.split("||")
    )


def _evaluate_token(token: str, bools: dict[str, bool]) -> bool:
    if not token:
        return False
    if token.startswith("!"):
        return not bools.get(token[1:].strip(), False)
    return bools.get(token, False)


def shell_quote(text: str) -> str:
    return "'" + text.replace("'", "'\"'\"'") + "'"


def build_run_command(script: str) -> str:
    """Wrap a step script so it runs in a login bash that stops at the first error."""
    script = script.strip()
    if not script:
        return ""
    return "bash -lc " + shell_quote("set -e\n" + script)


def strip_ansi(text: str) -> str:
    text = _ansi_osc.sub("", text)
    text = _ansi_csi.sub("", text)
    return _control.sub("", text)


@dataclass(frozen=True)
class AutoAnswer:
    """Answer to send to an interactive step, optionally after a prompt appears."""

    value: str
    wait_for: str = ""
    wait_for_regex: bool = False
    timeout_ms: int = 0
    delay_ms: int = 0

    @property
    def timeout(self) -> float:
        return (self.timeout_ms or DEFAULT_ANSWER_TIMEOUT_MS) / 1000

    @property
    def delay(self) -> float:
        return (self.delay_ms or DEFAULT_ANSWER_DELAY_MS) / 1000

    def matches(self, output: str) -> bool:
        if not self.wait_for:
            return True
        text = strip_ansi(output)
        if self.wait_for_regex:
            try:
                return re.search(self.wait_for, text) is not None
            except re.error:
                return self.wait_for in text
        return self.wait_for in text

    def render(self, variables: dict[str, str]) -> bytes:
        """Render the answer as bytes to write to the PTY.

        Plain answers are stripped and followed by Enter; true/false become
        y/n. Values that carry an explicit CR or LF are sent as-is.
        """
        raw = "\n" in self.value or "\r" in self.value
        value = render_template(self.value, variables)
        if raw:
            return value.encode()
        value = value.rstrip("\r\n")
        if value.strip().lower() == "true":
            value = "y"
        elif value.strip().lower() == "false":
            value = "n"
        return (value + "\r").encode()


@dataclass(frozen=True)
class Step:
    name: str = ""
    where: str = "machine"
    condition: str = ""
    run: str = ""
    tty: bool = False
    auto_answer: tuple[AutoAnswer, ...] = ()
    sleep: str = ""
    log: str = ""

    @classmethod
    def from_dict(cls, data: dict, where: str) -> "Step":
        _check_keys(data, _STEP_KEYS, where)
        tty = data.get("tty", False)
        answers: tuple[AutoAnswer, ...] = ()
        if isinstance(tty, dict):
            _check_keys(tty, {"auto_answer"}, f"{where}.tty")
            items = tty.get("auto_answer") or []
            for i, a in enumerate(items):
                _check_keys(a, _ANSWER_KEYS, f"{where}.tty.auto_answer[{i}]")
            answers = tuple(AutoAnswer(**{**a, "value": str(a.get("value", ""))}) for a in items)
            tty = True
        return cls(
            name=str(data.get("name") or ""),
            where=str(data.get("in") or "machine"),
            condition=str(data.get("if") or "").strip(),
            run=str(data.get("run") or ""),
            tty=bool(tty),
            auto_answer=answers,
            sleep=str(data.get("sleep") or ""),
            log=str(data.get("log") or ""),
        )


@dataclass(frozen=True)
class DNSRecord:
    type: str
    name: str
    content: str
    ttl: int = 0
    proxied: bool | None = None


@dataclass(frozen=True)
class App:
    name: str
    description: str = ""
    os: str = ""
    domain_hint: str = DEFAULT_DOMAIN_HINT
    min_specs: Specs = field(default_factory=lambda: Specs(DEFAULT_CPUS, DEFAULT_MEMORY_MB, DEFAULT_DISK_GB))
    providers: tuple[str, ...] = ()
    port: int = DEFAULT_APP_PORT
    dns_records: tuple[dict, ...] = ()
    questions: tuple[WizardQuestion, ...] = ()
    steps: tuple[Step, ...] = ()

    @property
    def install_steps(self) -> list[Step]:
        return [s for s in self.steps if not s.condition]

    @property
    def tls_steps(self) -> list[Step]:
        return [s for s in self.steps if s.condition]

    def supports(self, provider: str) -> bool:
        return not self.providers or provider in self.providers

    def records_for(self, domain: str, ip: str) -> list[DNSRecord]:
        """Expand the app's DNS record templates for a domain.

        '@' or an empty name means the domain itself, a bare label becomes
        label.domain. Type defaults to A and A/AAAA content to the server IP.
        Without templates a single A record for the domain is returned.
        """
        if not self.dns_records:
            return [DNSRecord(type="A", name=domain, content=ip)]
        variables = {"{opts.Domain}": domain, "{opts.ServerIP}": ip}
        records = []
        for r in self.dns_records:
            rtype = str(r.get("type") or "A").strip().upper()
            name = render_template(str(r.get("name") or ""), variables).strip()
            content = render_template(str(r.get("content") or ""), variables).strip()
            if name in ("", "@"):
                name = domain
            elif "." not in name and "*" not in name:
                name = f"{name}.{domain}"
            if not content and rtype in ("A", "AAAA"):
                content = ip
            records.append(
                DNSRecord(rtype, name, content, int(r.get("ttl") or 0), r.get("proxied"))
            )
        return records

    def info(self) -> AppInfo:
        return {
            "name": self.name,
            "description": self.description,
            "min_cpus": self.min_specs.cpus,
            "min_memory": self.min_specs.memory_mb,
            "min_disk": self.min_specs.disk_gb,
            "domain_hint": self.domain_hint,
            "providers": list(self.providers),
            "custom_questions": list(self.questions),
        }


def _parse_question(data: dict, where: str) -> WizardQuestion:
    _check_keys(data, _QUESTION_KEYS, where)
    name = str(data.get("name") or "")
    question: WizardQuestion = {
        "id": str(data.get("id") or "").strip() or slugify(name),
        "name": name,
        "type": str(data.get("type") or "text").strip().lower(),
        "required": bool(data.get("required", False)),
        "default": data.get("default"),
    }
    choices = data.get("choices") or []
    if choices:
        question["choices"] = [
            {"name": str(c.get("name", "")), "default": c.get("default")} for c in choices
        ]
    return question


def load_app(text: str, source: str = "<string>") -> App:
    """Parse one app definition.

    :raises ValueError: On empty input, unknown fields or a missing app name
    """
    data = yaml.safe_load(text)
    if not data:
        raise ValueError(f"{source}: empty app definition")
    _check_keys(data, _SPEC_KEYS, source)

    name = str(data.get("app") or "").strip()
    if not name:
        raise ValueError(f"{source}: missing 'app' name")

    hw = data.get("min_spec") or {}
    _check_keys(hw, {"cpu", "ram", "disk"}, f"{source}.min_spec")
    specs = Specs(
        cpus=int(hw.get("cpu") or 0) or DEFAULT_CPUS,
        memory_mb=parse_size_to_mb(hw.get("ram") or "") or DEFAULT_MEMORY_MB,
        disk_gb=parse_size_to_gb(hw.get("disk") or "") or DEFAULT_DISK_GB,
    )

    records = (data.get("dns") or {}).get("records") or []
    for i, r in enumerate(records):
        _check_keys(r, _RECORD_KEYS, f"{source}.dns.records[{i}]")

    wizard = data.get("wizard") or {}
    questions = (
        ((wizard.get("steps") or {}).get("application") or {}).get("custom_questions") or []
    )

    return App(
        name=name,
        description=str(data.get("description") or "").strip() or name,
        os=str(data.get("os") or ""),
        domain_hint=str(data.get("domain_hint") or wizard.get("domain_hint") or "").strip()
        or DEFAULT_DOMAIN_HINT,
        min_specs=specs,
        providers=tuple(data.get("providers") or ()),
        port=int(data.get("port") or DEFAULT_APP_PORT),
        dns_records=tuple(records),
        questions=tuple(
            _parse_question(q, f"{source}.custom_questions[{i}]") for i, q in enumerate(questions)
        ),
        steps=tuple(
            Step.from_dict(s, f"{source}.steps[{i}]") for i, s in enumerate(data.get("steps") or [])
        ),
    )


def load_catalog(directory: str | Path | None = None) -> dict[str, App]:
    """Load every ``*.yaml`` app definition, keyed by app name."""
    if directory is None:
        files = [
            f for f in resources.files("selfhosted").joinpath("catalog").iterdir()
            if f.name.endswith(".yaml")
        ]
    else:
        files = list(Path(directory).glob("*.yaml"))
    catalog: dict[str, App] = {}
    for f in sorted(files, key=lambda f: f.name):
        app = load_app(f.read_text(), source=f.name)
        if app.name in catalog:
            raise ValueError(f"{f.name}: duplicate app '{app.name}'")
        catalog[app.name] = app
    return catalog


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def question_default(question: WizardQuestion) -> Any:
    """Default answer for a wizard question; for a choice, the default choice's name."""
    if question.get("type") == "choice":
        chosen = next((c for c in question.get("choices") or [] if c.get("default")), None)
        return chosen["name"] if chosen else ""
    return question.get("default")


def install_vars(
    request: DeploymentRequest, ip: str, questions: tuple[WizardQuestion, ...] = ()
) -> tuple[dict[str, str], dict[str, bool]]:
    """Build template variables and condition flags for a deployment.

    Wizard answers are exposed under their question id, e.g. ``{opts.admin_email}``.
    Unanswered questions take their default.

    :return: (variables keyed '{opts.X}', bools keyed 'opts.X')
    """
    values: dict[str, Any] = {
        "Domain": request.domain,
        "ServerIP": ip,
        "SSHUser": request.ssh_user,
        "Email": request.email,
        "EnableSSL": bool(request.enable_ssl and request.domain),
        "SSL": bool(request.enable_ssl and request.domain),
        "HttpToHttpsRedirection": bool(request.enable_ssl and request.domain),
    }
    for q in questions:
        values[q["id"]] = question_default(q)
    values.update(request.answers)
    variables = {f"{{opts.{k}}}": _format(v) for k, v in values.items()}
    bools = {
        f"opts.{k}": v if isinstance(v, bool) else bool(_format(v).strip())
        for k, v in values.items()
    }
    return variables, bools
