"""Type definitions for selfhosted."""

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

InstanceStatus = Literal["provisioning", "ready", "unreachable", "terminated"]
DNSMode = Literal["auto", "skip", "force", "cloudflare"]


@dataclass(frozen=True)
class Region:
    slug: str
    name: str
    available: bool = True


@dataclass(frozen=True)
class Size:
    """A VM plan offered by a provider.

    Prices of 0 mean the provider did not report one.
    """

    slug: str
    memory_mb: int
    vcpus: int
    disk_gb: int = 0
    transfer: float = 0.0
    price_monthly: float = 0.0
    price_hourly: float = 0.0
    regions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Specs:
    """Minimum hardware for a deployment. disk_gb 0 disables the disk filter."""

    cpus: int
    memory_mb: int
    disk_gb: int = 0


@dataclass
class Instance:
    id: str
    name: str
    ip: str = ""
    status: InstanceStatus = "provisioning"
    region: str = ""


@dataclass(frozen=True)
class SSHKeyPair:
    private_key: str
    public_key: str = ""

    def __repr__(self) -> str:
        return f"SSHKeyPair(public_key={self.public_key[:24]!r}...)"


@dataclass(frozen=True)
class DeploymentRequest:
    """Everything needed to run one deployment, fixed at submission time."""

    app: str
    provider: str
    region: str = ""
    size: str = ""
    domain: str = ""
    server_name: str = ""
    email: str = ""
    enable_ssl: bool = True
    dns_mode: DNSMode = "auto"
    cloudflare_token: str = field(default="", repr=False)
    cloudflare_proxied: bool = False
    credentials: dict[str, str] = field(default_factory=dict, repr=False)
    ssh_keys: SSHKeyPair | None = field(default=None, repr=False)
    ssh_user: str = "root"
    min_specs: Specs | None = None
    answers: dict[str, Any] = field(default_factory=dict)

    @property
    def tags(self) -> list[str]:
        return [self.app, "selfhost"]


class WizardChoice(TypedDict):
    name: str
    default: Any


class WizardQuestion(TypedDict, total=False):
    id: str
    name: str
    type: str
    required: bool
    default: Any
    choices: list[WizardChoice]


class AppInfo(TypedDict, total=False):
    """App entry returned by /api/apps."""

    name: str
    description: str
    min_cpus: int
    min_memory: int
    min_disk: int
    domain_hint: str
    providers: list[str]
    custom_questions: list[WizardQuestion]


class ProviderInfo(TypedDict):
    name: str
    description: str
    needs_config: bool
