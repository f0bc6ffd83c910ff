"""Runtime settings read from the environment and an optional .env file."""

import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv


def _int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got '{value}'") from e


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8080
    backend_url: str = ""
    provision_timeout: int = 300
    ssh_timeout: int = 300
    terraform_dir: str | None = None
    log_level: str = "INFO"
    cloudflare_token: str = ""

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from SELFHOSTED_* variables.

        Provider credentials are not stored here; each provider reads its own
        variables when it resolves auth.

        :param dotenv: Load .env from the working directory first
        """
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        return cls(
            host=os.getenv("SELFHOSTED_HOST", cls.host),
            port=_int("SELFHOSTED_PORT", cls.port),
            backend_url=os.getenv("SELFHOSTED_BACKEND_URL", "").rstrip("/"),
            provision_timeout=_int("SELFHOSTED_PROVISION_TIMEOUT", cls.provision_timeout),
            ssh_timeout=_int("SELFHOSTED_SSH_TIMEOUT", cls.ssh_timeout),
            terraform_dir=os.getenv("SELFHOSTED_TERRAFORM_DIR") or None,
            log_level=os.getenv("SELFHOSTED_LOG_LEVEL", cls.log_level).upper(),
            cloudflare_token=os.getenv("CLOUDFLARE_API_TOKEN", ""),
        )

    @property
    def base_url(self) -> str:
        return self.backend_url or f"http://{self.host}:{self.port}"
