"""selfhosted - Deploy self-hosted apps to cloud VMs with DNS and TLS."""

from .apps import App, load_app, load_catalog
from .cli import app
from .errors import (
    AuthError,
    CommandError,
    NoMatchingSize,
    NoOpFailure,
    ProvisionError,
    ProvisionTimeout,
    SelfhostedError,
    SSHUnreachable,
    UpstreamError,
)
from .orchestrator import Deployer, start_deployment
from .providers import PROVIDERS, Provider, get_provider
from .session import DeploymentSession, SessionStore
from .sizing import pick_best_size_for_specs
from .types import DeploymentRequest, Instance, Region, Size, Specs
from .utils import error, log, sanitize_hostname, warn
