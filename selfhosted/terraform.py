"""Terraform-backed provisioning.

Modules live under ``<root>/<provider>/<profile>/main.tf`` and are copied into
a per-run work directory before ``terraform init`` and ``apply``. A module
must output ``id`` and ``ip``.
"""

import json
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable

from .errors import ProvisionError
from .types import DeploymentRequest, Instance
from .utils import log, sanitize_hostname

DEFAULT_PROFILE = "default"
WORK_ROOT = Path.home() / ".selfhosted" / "terraform"
TERRAFORM_TIMEOUT = 30 * 60
OUTPUT_DRAIN_TIMEOUT = 5


def module_roots(extra: str | Path | None = None) -> list[Path]:
    roots = []
    if extra:
        roots.append(Path(extra))
    roots.append(Path.cwd() / "marketplace" / "terraform")
    return roots


def find_module_dir(
    provider: str, profile: str = DEFAULT_PROFILE, root: str | Path | None = None
) -> Path | None:
    """:return: module directory containing main.tf, or None if not found"""
    for base in module_roots(root):
        module_dir = base / provider / profile
        if (module_dir / "main.tf").is_file():
            return module_dir
    return None


def format_var(key: str, value: Any) -> str:
    """Format a -var argument. Strings pass through, everything else is JSON."""
    if isinstance(value, str):
        return f"{key}={value}"
    return f"{key}={json.dumps(value)}"


def parse_outputs(text: str) -> dict[str, Any]:
    """Flatten ``terraform output -json`` into name -> value."""
    data = json.loads(text or "{}")
    return {k: v.get("value") for k, v in data.items()}


class TerraformRunner:
    """Runs terraform for one module, streaming output to a log callback.

    :param module_dir: Directory containing the module's main.tf
    :param work_root: Parent of per-run work directories
    :param binary: terraform executable
    :param timeout: Seconds each terraform command may run before it is killed
    """

    def __init__(
        self,
        module_dir: str | Path,
        work_root: str | Path = WORK_ROOT,
        binary: str = "terraform",
        timeout: float = TERRAFORM_TIMEOUT,
    ):
        self.module_dir = Path(module_dir)
        self.work_root = Path(work_root)
        self.binary = binary
        self.timeout = timeout

    def prepare_work_dir(self, run_id: str) -> Path:
        work_dir = self.work_root / (sanitize_hostname(run_id) or "run")
        if work_dir.exists():
            shutil.rmtree(work_dir)
        shutil.copytree(self.module_dir, work_dir)
        return work_dir

    def _run(
        self,
        args: list[str],
        work_dir: Path,
        env: dict[str, str],
        log: Callable[[str], None],
        capture: bool = False,
    ) -> str:
        cmd = [self.binary, *args]
        log(f"Running: {' '.join(cmd[:2])}")
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=work_dir,
                env={**os.environ, **env, "TF_IN_AUTOMATION": "1"},
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise ProvisionError(f"'{self.binary}' not found; install Terraform") from e
        lines: list[str] = []

        def pump() -> None:
            for line in proc.stdout:
                line = line.rstrip("\n")
                lines.append(line)
                if not capture and line.strip():
                    log(line)

        reader = threading.Thread(target=pump, daemon=True)
        reader.start()
        try:
            status = proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.wait()
            raise ProvisionError(
                f"terraform {args[0]} timed out after {self.timeout}s (workDir: {work_dir})"
            ) from e
        reader.join(OUTPUT_DRAIN_TIMEOUT)
        if status != 0:
            raise ProvisionError(
                f"terraform {args[0]} failed (workDir: {work_dir}):\n" + "\n".join(lines[-20:])
            )
        return "\n".join(lines)

    def apply(
        self,
        run_id: str,
        variables: dict[str, Any],
        env: dict[str, str] | None = None,
        log: Callable[[str], None] = log,
    ) -> dict[str, Any]:
        """Init and apply the module in a fresh work dir.

        :return: Module outputs plus '_work_dir' for a later destroy
        """
        env = env or {}
        work_dir = self.prepare_work_dir(run_id)
        self._run(["init", "-input=false", "-upgrade"], work_dir, env, log)
        var_args = []
        for key, value in variables.items():
            var_args += ["-var", format_var(key, value)]
        self._run(["apply", "-input=false", "-auto-approve", *var_args], work_dir, env, log)
        outputs = parse_outputs(self._run(["output", "-json"], work_dir, env, log, capture=True))
        outputs["_work_dir"] = str(work_dir)
        return outputs

    def destroy(self, work_dir: str | Path, env: dict[str, str] | None = None, log=log) -> None:
        work_dir = Path(work_dir)
        self._run(["init", "-input=false", "-upgrade"], work_dir, env or {}, log)
        self._run(["destroy", "-input=false", "-auto-approve"], work_dir, env or {}, log)


class TerraformProvider:
    """Provider variant that provisions through a Terraform module.

    Auth, catalog listing, reachability and DNS are delegated to the wrapped
    provider; only instance creation and destruction go through Terraform.
    """

    def __init__(self, base, runner: TerraformRunner):
        self.base = base
        self.runner = runner
        self.name = base.name
        self.description = f"{base.description} (Terraform)"
        self.default_region = base.default_region
        self.needs_config = base.needs_config
        self.ssh_user = base.ssh_user
        self._work_dirs: dict[str, str] = {}

    def __getattr__(self, item):
        return getattr(self.base, item)

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        token = self.base.resolve_auth()
        name = request.server_name
        variables = {
            "name": name,
            "region": request.region,
            "size": request.size,
            "ssh_public_key": request.ssh_keys.public_key if request.ssh_keys else "",
            "tags": request.tags,
        }
        env = self.base.terraform_env(token)
        log(f"Provisioning '{name}' with Terraform module '{self.runner.module_dir}'")
        outputs = self.runner.apply(name, variables, env=env, log=log)
        if not outputs.get("id"):
            raise ProvisionError("Terraform module did not output an instance 'id'")
        instance_id = str(outputs["id"])
        self._work_dirs[instance_id] = outputs["_work_dir"]
        return Instance(
            id=instance_id,
            name=name,
            ip=str(outputs.get("ip") or ""),
            status="provisioning",
            region=request.region,
        )

    def destroy_instance(self, instance: Instance) -> None:
        work_dir = self._work_dirs.get(instance.id)
        if work_dir is None:
            self.base.destroy_instance(instance)
            return
        self.runner.destroy(work_dir, env=self.base.terraform_env(self.base.resolve_auth()))
