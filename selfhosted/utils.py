"""Shared utility functions."""

import json
import logging
import os
import re
import subprocess
import sys
import threading
from typing import Callable

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("selfhosted")

# Pass to uvicorn.run(log_config=UVICORN_LOG_CONFIG) to prevent uvicorn from
# installing its own StreamHandler, so all logs flow through our RichHandler.
UVICORN_LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {},
    "handlers": {},
    "loggers": {
        "uvicorn": {"propagate": True, "level": "INFO"},
        "uvicorn.access": {"propagate": False, "level": "WARNING"},
        "uvicorn.error": {"propagate": True, "level": "INFO"},
    },
}

SECRET_ENV_VARS = [
    "DIGITALOCEAN_TOKEN",
    "DO_TOKEN",
    "VULTR_API_KEY",
    "SCW_SECRET_KEY",
    "UPCLOUD_PASSWORD",
    "CLOUDFLARE_API_TOKEN",
    "AWS_SECRET_ACCESS_KEY",
]

MIN_SECRET_LENGTH = 8
MAX_HOSTNAME_LENGTH = 63

_non_alnum = re.compile(r"[^a-z0-9]+")


class Redactor:
    """Replaces registered secret values with '***'.

    Secrets from SECRET_ENV_VARS are picked up at construction, more can be
    added at runtime (e.g. tokens submitted with a deployment request).
    """

    def __init__(self, env_vars: list[str] | None = None) -> None:
        self._lock = threading.Lock()
        self._secrets: set[str] = set()
        for var in env_vars if env_vars is not None else SECRET_ENV_VARS:
            self.add(os.environ.get(var, ""))

    def add(self, value: str | None) -> None:
        if value and len(value) >= MIN_SECRET_LENGTH:
            with self._lock:
                self._secrets.add(value)

    def __call__(self, text: str) -> str:
        with self._lock:
            # Longer values first so a secret containing another is fully masked
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, "***")
        return text


redact = Redactor()


class RedactingFilter(logging.Filter):
    """Logging filter that masks secret values in log records."""

    def __init__(self, redactor: Redactor = redact) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redactor(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                self.redactor(a) if isinstance(a, str) else a for a in record.args
            )
        return True


class LogStream:
    """File-like stream that forwards output line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    reaches the session log as it arrives instead of after the command exits.
    Blank lines are dropped.

    :param sink: Called with each complete line (defaults to logger.info)
    """

    def __init__(self, sink: Callable[[str], None] | None = None) -> None:
        self._buf = ""
        self._sink = sink or logger.info
        self.captured: list[str] = []

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            self._emit(line.rstrip("\r"))

    def flush(self) -> None:
        if self._buf:
            line, self._buf = self._buf, ""
            self._emit(line.rstrip("\r"))

    def _emit(self, line: str) -> None:
        self.captured.append(line)
        if line.strip():
            self._sink(line)

    def getvalue(self) -> str:
        return "\n".join(self.captured)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)
    rich_handler.addFilter(RedactingFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("httpx", logging.WARNING),
        ("httpcore", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
        ("invoke", logging.WARNING),
        ("uvicorn", logging.INFO),
        ("uvicorn.access", logging.WARNING),
        ("uvicorn.error", logging.INFO),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit. Only for CLI entry points."""
    logger.error(msg)
    sys.exit(1)


def run_cmd(
    *args, check: bool = True, cwd: str | None = None, env: dict | None = None
) -> str:
    """Execute local command and return stdout.

    :raises RuntimeError: If check is set and the command exits non-zero
    :raises FileNotFoundError: If the executable is not installed
    """
    result = subprocess.run(args, capture_output=True, text=True, cwd=cwd, env=env)
    if check and result.returncode != 0:
        raise RuntimeError(f"Command failed: {result.stderr.strip()}")
    return result.stdout.strip()


def run_cmd_json(*args, cwd: str | None = None, env: dict | None = None) -> dict | list:
    """Execute command and parse its stdout as JSON."""
    output = run_cmd(*args, cwd=cwd, env=env)
    return json.loads(output) if output else []


def sanitize_hostname(value: str) -> str:
    """Normalize a display string into a DNS-label-safe token.

    An empty result means there is no usable hostname; callers must fall
    back to a generated default.

    >>> sanitize_hostname("My Cool App!!")
    'my-cool-app'
    """
    value = _non_alnum.sub("-", value.strip().lower()).strip("-")
    return value[:MAX_HOSTNAME_LENGTH].rstrip("-")


def slugify(value: str) -> str:
    return sanitize_hostname(value) or "q"
