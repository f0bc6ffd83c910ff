"""Cloud provider abstractions.

Each provider exposes the same small capability set (auth resolution, region
and size listing, instance creation, reachability polling, optional DNS) and
is looked up by name in PROVIDERS. DigitalOcean, Vultr, Scaleway, UpCloud and
GCP talk to their REST APIs with httpx; AWS goes through boto3.
"""

import base64
import copy
import json
import os
import threading
import time
from pathlib import Path
from typing import Callable, Protocol

import boto3
import google.auth
import google.auth.credentials
import google.auth.transport.requests
import google.oauth2.credentials
import httpx
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from google.auth.exceptions import DefaultCredentialsError, RefreshError, TransportError
from google.oauth2 import service_account

from .apps import DNSRecord
from .domains import root_domain, subdomain
from .errors import AuthError, ProvisionError, ProvisionTimeout, UpstreamError
from .ssh import public_key_fingerprint, wait_for_port
from .terraform import TerraformProvider, TerraformRunner, find_module_dir
from .types import DeploymentRequest, Instance, ProviderInfo, Region, Size
from .utils import log, run_cmd

HTTP_TIMEOUT = 30
POLL_INTERVAL = 5
HOURS_PER_MONTH = 24 * 30


class Provider(Protocol):
    name: str
    description: str
    default_region: str
    needs_config: bool
    ssh_user: str

    def configure(self, config: dict) -> None: ...

    def resolve_auth(self) -> str: ...

    def has_credentials(self) -> bool: ...

    def list_regions(self) -> list[Region]: ...

    def list_sizes(self, region: str | None = None) -> list[Size]: ...

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance: ...

    def wait_reachable(
        self, instance: Instance, timeout: float, log: Callable[[str], None] = log
    ) -> Instance: ...

    def setup_dns(
        self,
        domain: str,
        ip: str,
        records: list[DNSRecord] | None = None,
        log: Callable[[str], None] = log,
    ) -> None: ...

    def destroy_instance(self, instance: Instance) -> None: ...

    def info(self) -> ProviderInfo: ...


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        return {}
    return yaml.safe_load(path.read_text()) or {}


class BaseProvider:
    """Shared plumbing: explicit config, httpx requests and reachability polling."""

    name = ""
    description = ""
    default_region = ""
    needs_config = True
    ssh_user = "root"
    base_url = ""
    poll_interval = POLL_INTERVAL

    def __init__(self, config: dict | None = None, transport: httpx.BaseTransport | None = None):
        self.config: dict = {}
        self._transport = transport
        self.configure(config or {})

    def configure(self, config: dict) -> None:
        """Store explicit credentials; they win over env vars and CLI config."""
        self.config.update({k: v for k, v in config.items() if v not in (None, "")})

    def resolve_auth(self) -> str:
        raise NotImplementedError

    def has_credentials(self) -> bool:
        try:
            self.resolve_auth()
        except AuthError:
            return False
        return True

    def info(self) -> ProviderInfo:
        return {
            "name": self.name,
            "description": self.description,
            "needs_config": self.needs_config,
        }

    def auth_headers(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def terraform_env(self, token: str) -> dict[str, str]:
        return {}

    def _api(self, method: str, path: str, *, allow: tuple[int, ...] = (), **kwargs) -> dict:
        """Authenticated API call.

        :param allow: Status codes treated as success with an empty body
        :raises AuthError: On 401/403
        :raises UpstreamError: On network errors and other 4xx/5xx
        """
        headers = self.auth_headers(self.resolve_auth())
        url = path if path.startswith("https://") else self.base_url + path
        try:
            with httpx.Client(headers=headers, timeout=HTTP_TIMEOUT, transport=self._transport) as client:
                response = client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.name}: {method} {path} failed: {e}") from e
        if response.status_code in allow:
            return {}
        if response.status_code in (401, 403):
            raise AuthError(f"{self.name}: credentials rejected ({response.status_code})")
        if response.status_code >= 400:
            raise UpstreamError(
                f"{self.name}: {method} {path} returned {response.status_code}: {response.text[:300]}"
            )
        return response.json() if response.content else {}

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        """:return: (status, ip) with status one of 'ready', 'provisioning', 'failed'"""
        raise NotImplementedError

    def wait_reachable(
        self, instance: Instance, timeout: float, log: Callable[[str], None] = log
    ) -> Instance:
        """Poll provider status, then TCP port 22, until ready or timeout.

        :raises ProvisionTimeout: If the instance is not reachable in time
        :raises ProvisionError: If the provider reports a terminal error state
        """
        deadline = time.monotonic() + timeout
        log(f"Waiting for instance '{instance.name}' to become active...")
        while True:
            status, ip = self.instance_status(instance)
            if status == "failed":
                instance.status = "terminated"
                raise ProvisionError(f"Instance '{instance.name}' entered a failed state")
            if status == "ready" and ip:
                instance.ip = ip
                break
            if time.monotonic() + self.poll_interval > deadline:
                instance.status = "unreachable"
                raise ProvisionTimeout(
                    f"Timed out after {int(timeout)}s waiting for instance '{instance.name}' to become active"
                )
            time.sleep(self.poll_interval)

        log(f"Instance active at '{instance.ip}', waiting for SSH...")
        remaining = max(0.0, deadline - time.monotonic())
        if not wait_for_port(instance.ip, 22, timeout=remaining, interval=self.poll_interval):
            instance.status = "unreachable"
            raise ProvisionTimeout(
                f"Timed out after {int(timeout)}s waiting for SSH on '{instance.ip}'"
            )
        instance.status = "ready"
        log("SSH port is open")
        return instance

    def setup_dns(
        self,
        domain: str,
        ip: str,
        records: list[DNSRecord] | None = None,
        log: Callable[[str], None] = log,
    ) -> None:
        raise UpstreamError(
            f"{self.description} DNS is not supported; create an A record "
            f"for '{domain}' pointing to '{ip}' manually"
        )

    def destroy_instance(self, instance: Instance) -> None:
        raise NotImplementedError


class DigitalOceanProvider(BaseProvider):
    name = "digitalocean"
    description = "DigitalOcean"
    default_region = "fra1"
    base_url = "https://api.digitalocean.com/v2"
    image = "ubuntu-22-04-x64"

    def resolve_auth(self) -> str:
        token = (
            self.config.get("token")
            or os.getenv("DIGITALOCEAN_TOKEN")
            or os.getenv("DO_TOKEN")
            or _read_yaml(Path.home() / ".config" / "doctl" / "config.yaml").get("access-token")
        )
        if not token:
            raise AuthError(
                "DigitalOcean token not found. Set DIGITALOCEAN_TOKEN or run: doctl auth init"
            )
        return token

    def terraform_env(self, token: str) -> dict[str, str]:
        return {"DIGITALOCEAN_TOKEN": token}

    def list_regions(self) -> list[Region]:
        data = self._api("GET", "/regions", params={"per_page": 200})
        regions = [
            Region(slug=r["slug"], name=r["name"], available=r.get("available", False))
            for r in data.get("regions", [])
            if r.get("available")
        ]
        return sorted(regions, key=lambda r: r.slug)

    def list_sizes(self, region: str | None = None) -> list[Size]:
        data = self._api("GET", "/sizes", params={"per_page": 200})
        sizes = []
        for s in data.get("sizes", []):
            if not s.get("available"):
                continue
            if region and region not in s.get("regions", []):
                continue
            sizes.append(
                Size(
                    slug=s["slug"],
                    memory_mb=s["memory"],
                    vcpus=s["vcpus"],
                    disk_gb=s.get("disk", 0),
                    transfer=float(s.get("transfer", 0)),
                    price_monthly=float(s.get("price_monthly", 0)),
                    price_hourly=float(s.get("price_hourly", 0)),
                    regions=tuple(s.get("regions", [])),
                )
            )
        return sizes

    def _ensure_ssh_key(self, name: str, public_key: str) -> str:
        """Upload the deployment key; 422 means it is already registered."""
        fingerprint = public_key_fingerprint(public_key)
        self._api(
            "POST", "/account/keys", json={"name": name, "public_key": public_key}, allow=(422,)
        )
        return fingerprint

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        try:
            fingerprint = self._ensure_ssh_key(
                f"selfhosted-{request.server_name}", request.ssh_keys.public_key
            )
            log(f"Creating droplet '{request.server_name}' ({request.size}) in '{request.region}'...")
            data = self._api(
                "POST",
                "/droplets",
                json={
                    "name": request.server_name,
                    "region": request.region,
                    "size": request.size,
                    "image": self.image,
                    "ssh_keys": [fingerprint],
                    "tags": request.tags,
                },
            )
        except UpstreamError as e:
            raise ProvisionError(str(e)) from e
        droplet = data["droplet"]
        return Instance(
            id=str(droplet["id"]), name=droplet["name"], status="provisioning", region=request.region
        )

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        droplet = self._api("GET", f"/droplets/{instance.id}")["droplet"]
        ip = next(
            (n["ip_address"] for n in droplet["networks"].get("v4", []) if n["type"] == "public"),
            "",
        )
        status = droplet["status"]
        if status == "active":
            return "ready", ip
        if status in ("off", "archive"):
            return "failed", ip
        return "provisioning", ip

    def setup_dns(
        self,
        domain: str,
        ip: str,
        records: list[DNSRecord] | None = None,
        log: Callable[[str], None] = log,
    ) -> None:
        root = root_domain(domain)
        if not root:
            raise UpstreamError(f"Invalid domain '{domain}'")
        self._api("POST", "/domains", json={"name": root}, allow=(422,))
        for record in records or [DNSRecord(type="A", name=domain, content=ip)]:
            name = subdomain(record.name) if record.name == root or record.name.endswith("." + root) else record.name
            log(f"Creating DigitalOcean {record.type} record '{record.name}' -> '{record.content}'")
            self._api(
                "POST",
                f"/domains/{root}/records",
                json={
                    "type": record.type,
                    "name": name,
                    "data": record.content,
                    "ttl": record.ttl or 300,
                },
            )

    def destroy_instance(self, instance: Instance) -> None:
        self._api("DELETE", f"/droplets/{instance.id}", allow=(404,))


class VultrProvider(BaseProvider):
    name = "vultr"
    description = "Vultr"
    default_region = "ewr"
    base_url = "https://api.vultr.com/v2"
    # Ubuntu 22.04 LTS x64
    os_id = 1743

    def resolve_auth(self) -> str:
        token = (
            self.config.get("api_key")
            or self.config.get("token")
            or os.getenv("VULTR_API_KEY")
            or _read_yaml(Path.home() / ".vultr-cli.yaml").get("api-key")
        )
        if not token:
            raise AuthError("Vultr API key not found. Set VULTR_API_KEY or configure vultr-cli")
        return token

    def terraform_env(self, token: str) -> dict[str, str]:
        return {"VULTR_API_KEY": token}

    def list_regions(self) -> list[Region]:
        data = self._api("GET", "/regions", params={"per_page": 500})
        regions = [
            Region(slug=r["id"], name=f"{r['city']} ({r['country']})")
            for r in data.get("regions", [])
        ]
        return sorted(regions, key=lambda r: r.slug)

    def list_sizes(self, region: str | None = None) -> list[Size]:
        data = self._api("GET", "/plans", params={"type": "vc2", "per_page": 500})
        sizes = []
        for p in data.get("plans", []):
            if p.get("gpu_vram_gb") or "gpu" in p.get("id", ""):
                continue
            if region and region not in p.get("locations", []):
                continue
            monthly = float(p.get("monthly_cost", 0))
            sizes.append(
                Size(
                    slug=p["id"],
                    memory_mb=p["ram"],
                    vcpus=p["vcpu_count"],
                    disk_gb=p.get("disk", 0),
                    transfer=float(p.get("bandwidth", 0)),
                    price_monthly=monthly,
                    price_hourly=round(monthly / HOURS_PER_MONTH, 5),
                    regions=tuple(p.get("locations", [])),
                )
            )
        return sizes

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        try:
            key = self._api(
                "POST",
                "/ssh-keys",
                json={"name": f"selfhosted-{request.server_name}", "ssh_key": request.ssh_keys.public_key},
            )["ssh_key"]
            log(f"Creating Vultr instance '{request.server_name}' ({request.size}) in '{request.region}'...")
            data = self._api(
                "POST",
                "/instances",
                json={
                    "region": request.region,
                    "plan": request.size,
                    "os_id": self.os_id,
                    "label": request.server_name,
                    "hostname": request.server_name,
                    "sshkey_id": [key["id"]],
                    "tags": request.tags,
                },
            )
        except UpstreamError as e:
            raise ProvisionError(str(e)) from e
        inst = data["instance"]
        return Instance(id=inst["id"], name=request.server_name, region=request.region)

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        inst = self._api("GET", f"/instances/{instance.id}")["instance"]
        ip = inst.get("main_ip") or ""
        if ip == "0.0.0.0":
            ip = ""
        if inst["status"] == "active" and inst.get("power_status") == "running":
            return "ready", ip
        if inst["status"] in ("suspended", "closed") or inst.get("server_status") == "locked":
            return "failed", ip
        return "provisioning", ip

    def destroy_instance(self, instance: Instance) -> None:
        self._api("DELETE", f"/instances/{instance.id}", allow=(404,))


class ScalewayProvider(BaseProvider):
    name = "scaleway"
    description = "Scaleway"
    default_region = "fr-par-1"
    base_url = "https://api.scaleway.com"
    image_label = "ubuntu_jammy"

    ZONES = {
        "fr-par-1": "Paris 1",
        "fr-par-2": "Paris 2",
        "fr-par-3": "Paris 3",
        "nl-ams-1": "Amsterdam 1",
        "nl-ams-2": "Amsterdam 2",
        "nl-ams-3": "Amsterdam 3",
        "pl-waw-1": "Warsaw 1",
        "pl-waw-2": "Warsaw 2",
        "pl-waw-3": "Warsaw 3",
    }

    def _file_config(self) -> dict:
        return _read_yaml(Path.home() / ".config" / "scw" / "config.yaml")

    def resolve_auth(self) -> str:
        token = (
            self.config.get("secret_key")
            or os.getenv("SCW_SECRET_KEY")
            or self._file_config().get("secret_key")
        )
        if not token:
            raise AuthError("Scaleway secret key not found. Set SCW_SECRET_KEY or run: scw init")
        return token

    def project_id(self) -> str:
        project = (
            self.config.get("project_id")
            or os.getenv("SCW_DEFAULT_PROJECT_ID")
            or self._file_config().get("default_project_id")
        )
        if not project:
            raise AuthError("Scaleway project not found. Set SCW_DEFAULT_PROJECT_ID")
        return project

    def auth_headers(self, token: str) -> dict:
        return {"X-Auth-Token": token}

    def terraform_env(self, token: str) -> dict[str, str]:
        return {"SCW_SECRET_KEY": token, "SCW_DEFAULT_PROJECT_ID": self.project_id()}

    def list_regions(self) -> list[Region]:
        self.resolve_auth()
        return [Region(slug=z, name=n) for z, n in sorted(self.ZONES.items())]

    def list_sizes(self, region: str | None = None) -> list[Size]:
        zone = region or self.default_region
        products = self._api("GET", f"/instance/v1/zones/{zone}/products/servers", params={"per_page": 100})
        availability = self._api("GET", f"/instance/v1/zones/{zone}/products/servers/availability")
        available = availability.get("servers", {})
        sizes = []
        for slug, s in sorted(products.get("servers", {}).items()):
            if available.get(slug, {}).get("availability") == "shortage":
                continue
            sizes.append(
                Size(
                    slug=slug,
                    memory_mb=s["ram"] // (1024 * 1024),
                    vcpus=s["ncpus"],
                    disk_gb=(s.get("volumes_constraint") or {}).get("max_size", 0) // 10**9,
                    price_monthly=float(s.get("monthly_price") or 0),
                    price_hourly=float(s.get("hourly_price") or 0),
                    regions=(zone,),
                )
            )
        return sizes

    def _find_image(self, zone: str, commercial_type: str) -> str:
        data = self._api(
            "GET",
            "/marketplace/v2/local-images",
            params={"image_label": self.image_label, "zone": zone, "type": "instance_local"},
        )
        for image in data.get("local_images", []):
            if commercial_type in image.get("compatible_commercial_types", []):
                return image["id"]
        raise ProvisionError(f"No '{self.image_label}' image compatible with '{commercial_type}' in '{zone}'")

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        zone = request.region or self.default_region
        project = self.project_id()
        try:
            self._api(
                "POST",
                "/iam/v1alpha1/ssh-keys",
                json={
                    "name": f"selfhosted-{request.server_name}",
                    "public_key": request.ssh_keys.public_key,
                    "project_id": project,
                },
                allow=(409,),
            )
            image = self._find_image(zone, request.size)
            log(f"Creating Scaleway server '{request.server_name}' ({request.size}) in '{zone}'...")
            server = self._api(
                "POST",
                f"/instance/v1/zones/{zone}/servers",
                json={
                    "name": request.server_name,
                    "commercial_type": request.size,
                    "image": image,
                    "project": project,
                    "tags": request.tags,
                    "dynamic_ip_required": True,
                },
            )["server"]
            self._api(
                "POST", f"/instance/v1/zones/{zone}/servers/{server['id']}/action", json={"action": "poweron"}
            )
        except UpstreamError as e:
            raise ProvisionError(str(e)) from e
        return Instance(id=server["id"], name=request.server_name, region=zone)

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        zone = instance.region or self.default_region
        server = self._api("GET", f"/instance/v1/zones/{zone}/servers/{instance.id}")["server"]
        ip = (server.get("public_ip") or {}).get("address", "")
        if server["state"] == "running":
            return "ready", ip
        if server["state"] == "locked":
            return "failed", ip
        return "provisioning", ip

    def destroy_instance(self, instance: Instance) -> None:
        zone = instance.region or self.default_region
        self._api(
            "POST",
            f"/instance/v1/zones/{zone}/servers/{instance.id}/action",
            json={"action": "terminate"},
            allow=(404,),
        )


class UpCloudProvider(BaseProvider):
    name = "upcloud"
    description = "UpCloud"
    default_region = "de-fra1"
    base_url = "https://api.upcloud.com/1.3"
    # Ubuntu Server 22.04 LTS template
    template = "01000000-0000-4000-8000-000030220200"

    def resolve_auth(self) -> str:
        file_config = _read_yaml(Path.home() / ".config" / "upctl.yaml")
        username = (
            self.config.get("username") or os.getenv("UPCLOUD_USERNAME") or file_config.get("username")
        )
        password = (
            self.config.get("password") or os.getenv("UPCLOUD_PASSWORD") or file_config.get("password")
        )
        if not username or not password:
            raise AuthError(
                "UpCloud credentials not found. Set UPCLOUD_USERNAME and UPCLOUD_PASSWORD"
            )
        return base64.b64encode(f"{username}:{password}".encode()).decode()

    def auth_headers(self, token: str) -> dict:
        return {"Authorization": f"Basic {token}"}

    def terraform_env(self, token: str) -> dict[str, str]:
        username, password = base64.b64decode(token).decode().split(":", 1)
        return {"UPCLOUD_USERNAME": username, "UPCLOUD_PASSWORD": password}

    def list_regions(self) -> list[Region]:
        data = self._api("GET", "/zone")
        regions = [
            Region(slug=z["id"], name=z["description"])
            for z in data.get("zones", {}).get("zone", [])
            if z.get("public", "yes") == "yes"
        ]
        return sorted(regions, key=lambda r: r.slug)

    def _hourly_prices(self, zone: str) -> dict[str, float]:
        data = self._api("GET", "/price")
        for z in data.get("prices", {}).get("zone", []):
            if z.get("name") == zone:
                # Prices are cents per hour, keyed "server_plan_<plan>"
                return {
                    k.removeprefix("server_plan_"): v.get("price", 0) / 100
                    for k, v in z.items()
                    if k.startswith("server_plan_") and isinstance(v, dict)
                }
        return {}

    def list_sizes(self, region: str | None = None) -> list[Size]:
        data = self._api("GET", "/plan")
        prices = self._hourly_prices(region) if region else {}
        sizes = []
        for p in data.get("plans", {}).get("plan", []):
            hourly = prices.get(p["name"], 0.0)
            sizes.append(
                Size(
                    slug=p["name"],
                    memory_mb=p["memory_amount"],
                    vcpus=p["core_number"],
                    disk_gb=p.get("storage_size", 0),
                    transfer=float(p.get("public_traffic_out", 0)),
                    price_monthly=round(hourly * HOURS_PER_MONTH, 2),
                    price_hourly=hourly,
                    regions=(region,) if region else (),
                )
            )
        return sizes

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        disk = request.min_specs.disk_gb if request.min_specs else 25
        body = {
            "server": {
                "zone": request.region,
                "title": request.server_name,
                "hostname": request.server_name,
                "plan": request.size,
                "metadata": "yes",
                "storage_devices": {
                    "storage_device": [
                        {
                            "action": "clone",
                            "storage": self.template,
                            "title": f"{request.server_name}-disk",
                            "size": max(disk, 10),
                            "tier": "maxiops",
                        }
                    ]
                },
                "login_user": {
                    "username": "root",
                    "create_password": "no",
                    "ssh_keys": {"ssh_key": [request.ssh_keys.public_key]},
                },
                "labels": {"label": [{"key": "app", "value": request.app}]},
            }
        }
        log(f"Creating UpCloud server '{request.server_name}' ({request.size}) in '{request.region}'...")
        try:
            server = self._api("POST", "/server", json=body)["server"]
        except UpstreamError as e:
            raise ProvisionError(str(e)) from e
        return Instance(id=server["uuid"], name=request.server_name, region=request.region)

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        server = self._api("GET", f"/server/{instance.id}")["server"]
        ip = next(
            (
                a["address"]
                for a in server.get("ip_addresses", {}).get("ip_address", [])
                if a.get("access") == "public" and a.get("family") == "IPv4"
            ),
            "",
        )
        if server["state"] == "started":
            return "ready", ip
        if server["state"] == "error":
            return "failed", ip
        return "provisioning", ip

    def destroy_instance(self, instance: Instance) -> None:
        self._api("POST", f"/server/{instance.id}/stop", json={"stop_server": {"stop_type": "hard"}}, allow=(400, 404))
        self._api("DELETE", f"/server/{instance.id}", params={"storages": 1}, allow=(404,))


GOOGLE_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


class GCPProvider(BaseProvider):
    name = "gcp"
    description = "Google Cloud"
    default_region = "europe-west1"
    ssh_user = "selfhosted"
    base_url = "https://compute.googleapis.com/compute/v1"
    image = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"

    def __init__(self, config: dict | None = None, transport: httpx.BaseTransport | None = None):
        super().__init__(config, transport)
        self._credentials: google.auth.credentials.Credentials | None = None
        self._default_project = ""
        self._lock = threading.Lock()

    def configure(self, config: dict) -> None:
        super().configure(config)
        self._credentials = None

    def _credentials_info(self) -> dict | None:
        explicit = self.config.get("credentials_json")
        if explicit:
            return json.loads(explicit) if isinstance(explicit, str) else explicit
        return None

    def _load_credentials(self) -> google.auth.credentials.Credentials | None:
        """Explicit key material first, then application default credentials.

        :return: None when neither is available
        :raises AuthError: If explicit key material is malformed
        """
        info = self._credentials_info()
        if info is not None:
            try:
                if info.get("type") == "authorized_user":
                    return google.oauth2.credentials.Credentials.from_authorized_user_info(
                        info, scopes=GOOGLE_SCOPES
                    )
                return service_account.Credentials.from_service_account_info(info, scopes=GOOGLE_SCOPES)
            except ValueError as e:
                raise AuthError(f"Invalid Google Cloud credentials: {e}") from e
        try:
            credentials, project = google.auth.default(scopes=GOOGLE_SCOPES)
        except DefaultCredentialsError:
            return None
        self._default_project = project or ""
        return credentials

    def _fetch_token(self) -> str:
        if self._credentials is None:
            self._credentials = self._load_credentials()
        if self._credentials is not None:
            if not self._credentials.valid:
                try:
                    self._credentials.refresh(google.auth.transport.requests.Request())
                except RefreshError as e:
                    raise AuthError(f"Google rejected credentials: {e}") from e
                except TransportError as e:
                    raise UpstreamError(f"Google token request failed: {e}") from e
            return self._credentials.token
        try:
            token = run_cmd("gcloud", "auth", "print-access-token")
        except (RuntimeError, FileNotFoundError):
            token = ""
        if not token:
            raise AuthError(
                "Google Cloud credentials not found. Provide a service account key, "
                "set GOOGLE_APPLICATION_CREDENTIALS or run: gcloud auth login"
            )
        return token

    def resolve_auth(self) -> str:
        with self._lock:
            return self._fetch_token()

    def project(self) -> str:
        info = self._credentials_info() or {}
        if not info and self._credentials is None:
            with self._lock:
                self._credentials = self._load_credentials()
        project = (
            self.config.get("project")
            or os.getenv("GCP_PROJECT")
            or os.getenv("GOOGLE_CLOUD_PROJECT")
            or info.get("project_id")
            or info.get("quota_project_id")
            or self._default_project
        )
        if not project:
            try:
                project = run_cmd("gcloud", "config", "get-value", "project")
            except (RuntimeError, FileNotFoundError):
                project = ""
        if not project:
            raise AuthError("Google Cloud project not found. Set GCP_PROJECT")
        return project

    def terraform_env(self, token: str) -> dict[str, str]:
        return {"GOOGLE_OAUTH_ACCESS_TOKEN": token, "GOOGLE_PROJECT": self.project()}

    def list_regions(self) -> list[Region]:
        data = self._api("GET", f"/projects/{self.project()}/regions")
        regions = [
            Region(slug=r["name"], name=r.get("description") or r["name"])
            for r in data.get("items", [])
            if r.get("status") == "UP"
        ]
        return sorted(regions, key=lambda r: r.slug)

    def zone_for(self, region: str) -> str:
        data = self._api("GET", f"/projects/{self.project()}/regions/{region}")
        zones = sorted(z.rsplit("/", 1)[-1] for z in data.get("zones", []))
        if not zones:
            raise UpstreamError(f"Region '{region}' has no zones")
        return zones[0]

    def list_sizes(self, region: str | None = None) -> list[Size]:
        zone = self.zone_for(region or self.default_region)
        data = self._api(
            "GET", f"/projects/{self.project()}/zones/{zone}/machineTypes", params={"maxResults": 500}
        )
        sizes = [
            Size(
                slug=m["name"],
                memory_mb=m["memoryMb"],
                vcpus=m["guestCpus"],
                regions=(zone,),
            )
            for m in data.get("items", [])
            if m["name"].startswith("e2-")
        ]
        return sorted(sizes, key=lambda s: (s.vcpus, s.memory_mb, s.slug))

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        disk = request.min_specs.disk_gb if request.min_specs else 20
        try:
            zone = self.zone_for(request.region or self.default_region)
            body = {
                "name": request.server_name,
                "machineType": f"zones/{zone}/machineTypes/{request.size}",
                "disks": [
                    {
                        "boot": True,
                        "autoDelete": True,
                        "initializeParams": {"sourceImage": self.image, "diskSizeGb": str(max(disk, 10))},
                    }
                ],
                "networkInterfaces": [
                    {
                        "network": "global/networks/default",
                        "accessConfigs": [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}],
                    }
                ],
                "metadata": {
                    "items": [{"key": "ssh-keys", "value": f"{self.ssh_user}:{request.ssh_keys.public_key}"}]
                },
                "tags": {"items": ["http-server", "https-server"]},
                "labels": {"app": request.app, "managed-by": "selfhost"},
            }
            log(f"Creating GCE instance '{request.server_name}' ({request.size}) in '{zone}'...")
            self._api("POST", f"/projects/{self.project()}/zones/{zone}/instances", json=body)
        except UpstreamError as e:
            raise ProvisionError(str(e)) from e
        return Instance(id=request.server_name, name=request.server_name, region=zone)

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        data = self._api("GET", f"/projects/{self.project()}/zones/{instance.region}/instances/{instance.id}")
        ip = ""
        for nic in data.get("networkInterfaces", []):
            for access in nic.get("accessConfigs", []):
                ip = ip or access.get("natIP", "")
        if data["status"] == "RUNNING":
            return "ready", ip
        if data["status"] in ("STOPPING", "TERMINATED", "SUSPENDED"):
            return "failed", ip
        return "provisioning", ip

    def destroy_instance(self, instance: Instance) -> None:
        zone = instance.region or self.zone_for(self.default_region)
        self._api(
            "DELETE", f"/projects/{self.project()}/zones/{zone}/instances/{instance.id}", allow=(404,)
        )


class AWSProvider(BaseProvider):
    name = "aws"
    description = "Amazon Web Services"
    ssh_user = "ubuntu"
    # Canonical
    ami_owner = "099720109477"
    ami_pattern = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"
    security_group = "selfhosted-web"
    instance_families = ["t3.*", "t3a.*", "m6i.*"]

    def __init__(self, config: dict | None = None, session=None):
        super().__init__(config)
        self._session = session
        self.default_region = self.config.get("region") or os.getenv("AWS_REGION", "us-east-1")

    def configure(self, config: dict) -> None:
        super().configure(config)
        self._session = None

    def _get_session(self, region: str | None = None):
        if self._session is not None and region is None:
            return self._session
        kwargs = {"region_name": region or self.config.get("region") or self.default_region}
        if self.config.get("access_key_id"):
            kwargs["aws_access_key_id"] = self.config["access_key_id"]
            kwargs["aws_secret_access_key"] = self.config.get("secret_access_key")
        elif self.config.get("profile"):
            kwargs["profile_name"] = self.config["profile"]
        return boto3.Session(**kwargs)

    def resolve_auth(self) -> str:
        """Validate credentials from explicit keys, a profile or the default chain.

        :return: AWS account id
        """
        try:
            identity = self._get_session().client("sts").get_caller_identity()
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code in ("ExpiredToken", "ExpiredTokenException"):
                raise AuthError("AWS credentials expired. Run: aws sso login") from e
            raise AuthError(f"AWS authentication failed ({code}): {e}") from e
        except BotoCoreError as e:
            raise AuthError(f"AWS authentication failed: {e}") from e
        return identity["Account"]

    def _ec2(self, region: str | None = None):
        return self._get_session(region).client("ec2")

    def list_regions(self) -> list[Region]:
        try:
            data = self._ec2().describe_regions()
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f"aws: describe_regions failed: {e}") from e
        regions = [Region(slug=r["RegionName"], name=r["RegionName"]) for r in data["Regions"]]
        return sorted(regions, key=lambda r: r.slug)

    def list_sizes(self, region: str | None = None) -> list[Size]:
        sizes = []
        try:
            paginator = self._ec2(region).get_paginator("describe_instance_types")
            pages = paginator.paginate(
                Filters=[{"Name": "instance-type", "Values": self.instance_families}]
            )
            for page in pages:
                for t in page["InstanceTypes"]:
                    sizes.append(
                        Size(
                            slug=t["InstanceType"],
                            memory_mb=t["MemoryInfo"]["SizeInMiB"],
                            vcpus=t["VCpuInfo"]["DefaultVCpus"],
                            regions=(region,) if region else (),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f"aws: describe_instance_types failed: {e}") from e
        return sorted(sizes, key=lambda s: (s.vcpus, s.memory_mb, s.slug))

    def _find_ami(self, ec2) -> str:
        response = ec2.describe_images(
            Filters=[
                {"Name": "name", "Values": [self.ami_pattern]},
                {"Name": "state", "Values": ["available"]},
            ],
            Owners=[self.ami_owner],
        )
        if not response["Images"]:
            raise ProvisionError(f"No AMI found matching '{self.ami_pattern}'")
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def _ensure_security_group(self, ec2, log: Callable[[str], None] = log) -> str:
        response = ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [self.security_group]}]
        )
        if response["SecurityGroups"]:
            return response["SecurityGroups"][0]["GroupId"]
        log(f"Creating security group '{self.security_group}'...")
        sg_id = ec2.create_security_group(
            GroupName=self.security_group, Description="selfhosted: SSH, HTTP and HTTPS"
        )["GroupId"]
        ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                }
                for port in (22, 80, 443)
            ],
        )
        return sg_id

    def create_instance(self, request: DeploymentRequest, log: Callable[[str], None] = log) -> Instance:
        ec2 = self._ec2(request.region)
        disk = request.min_specs.disk_gb if request.min_specs else 20
        key_name = f"selfhosted-{request.server_name}"
        try:
            ec2.import_key_pair(KeyName=key_name, PublicKeyMaterial=request.ssh_keys.public_key.encode())
            ami_id = self._find_ami(ec2)
            sg_id = self._ensure_security_group(ec2, log)
            log(f"Creating EC2 instance '{request.server_name}' ({request.size}) in '{request.region}'...")
            response = ec2.run_instances(
                ImageId=ami_id,
                InstanceType=request.size,
                KeyName=key_name,
                MinCount=1,
                MaxCount=1,
                SecurityGroupIds=[sg_id],
                BlockDeviceMappings=[
                    {"DeviceName": "/dev/sda1", "Ebs": {"VolumeSize": max(disk, 8), "VolumeType": "gp3"}}
                ],
                TagSpecifications=[
                    {
                        "ResourceType": "instance",
                        "Tags": [
                            {"Key": "Name", "Value": request.server_name},
                            {"Key": "ManagedBy", "Value": "selfhost"},
                            {"Key": "App", "Value": request.app},
                        ],
                    }
                ],
            )
        except (ClientError, BotoCoreError) as e:
            raise ProvisionError(f"aws: {e}") from e
        instance_id = response["Instances"][0]["InstanceId"]
        return Instance(id=instance_id, name=request.server_name, region=request.region)

    def instance_status(self, instance: Instance) -> tuple[str, str]:
        try:
            response = self._ec2(instance.region or None).describe_instances(InstanceIds=[instance.id])
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f"aws: describe_instances failed: {e}") from e
        data = response["Reservations"][0]["Instances"][0]
        state = data["State"]["Name"]
        ip = data.get("PublicIpAddress", "")
        if state == "running":
            return "ready", ip
        if state in ("shutting-down", "terminated", "stopping", "stopped"):
            return "failed", ip
        return "provisioning", ip

    def setup_dns(
        self,
        domain: str,
        ip: str,
        records: list[DNSRecord] | None = None,
        log: Callable[[str], None] = log,
    ) -> None:
        route53 = self._get_session().client("route53")
        root = root_domain(domain)
        try:
            zones = route53.list_hosted_zones_by_name(DNSName=root)["HostedZones"]
            zone_id = next((z["Id"] for z in zones if z["Name"] in (f"{root}.", root)), None)
            if zone_id is None:
                raise UpstreamError(f"No Route 53 hosted zone for '{root}'")
            changes = [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": r.name,
                        "Type": r.type,
                        "TTL": r.ttl or 300,
                        "ResourceRecords": [{"Value": r.content}],
                    },
                }
                for r in records or [DNSRecord(type="A", name=domain, content=ip)]
            ]
            log(f"Updating Route 53 records in zone '{root}'...")
            route53.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch={"Changes": changes})
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f"aws: Route 53 update failed: {e}") from e

    def destroy_instance(self, instance: Instance) -> None:
        try:
            self._ec2(instance.region or None).terminate_instances(InstanceIds=[instance.id])
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f"aws: terminate_instances failed: {e}") from e


PROVIDERS: dict[str, type[BaseProvider]] = {
    p.name: p
    for p in (
        AWSProvider,
        DigitalOceanProvider,
        GCPProvider,
        ScalewayProvider,
        UpCloudProvider,
        VultrProvider,
    )
}


def get_provider(name: str, config: dict | None = None, terraform_dir: str | None = None) -> Provider:
    """Create a provider by name.

    When terraform_dir contains a module for the provider, instances are
    created through Terraform instead of the provider API.

    :raises ValueError: If the provider name is unknown
    """
    if name not in PROVIDERS:
        raise ValueError(f"Unknown provider: '{name}'. Available: {', '.join(sorted(PROVIDERS))}")
    provider = PROVIDERS[name](config)
    if terraform_dir:
        module_dir = find_module_dir(name, root=terraform_dir)
        if module_dir is not None:
            return TerraformProvider(provider, TerraformRunner(module_dir))
    return provider


class ProviderRegistry:
    """Process-wide provider instances, keeping config submitted through the API.

    The shared instances serve listing and credential checks. Deployments get
    their own instance from :meth:`for_deployment` so one session's
    credentials never reach another.
    """

    def __init__(
        self, terraform_dir: str | None = None, instances: dict[str, Provider] | None = None
    ):
        self.terraform_dir = terraform_dir
        self._lock = threading.Lock()
        self._providers: dict[str, Provider] = dict(instances or {})
        self._configs: dict[str, dict] = {}
        self._registered = set(instances or {})

    def __contains__(self, name: str) -> bool:
        return name in PROVIDERS or name in self._providers

    def names(self) -> list[str]:
        return sorted(set(PROVIDERS) | set(self._providers))

    def get(self, name: str) -> Provider:
        with self._lock:
            if name not in self._providers:
                self._providers[name] = get_provider(name, terraform_dir=self.terraform_dir)
            return self._providers[name]

    def configure(self, name: str, config: dict) -> Provider:
        provider = self.get(name)
        with self._lock:
            self._configs.setdefault(name, {}).update(config)
        provider.configure(config)
        return provider

    def for_deployment(self, name: str, credentials: dict | None = None) -> Provider:
        """New provider for one deployment: registry config overlaid with the request's credentials.

        Instances passed in at construction are shallow-copied with their own config.
        """
        with self._lock:
            config = {**self._configs.get(name, {}), **(credentials or {})}
        if name in PROVIDERS and name not in self._registered:
            return get_provider(name, config=config, terraform_dir=self.terraform_dir)
        shared = self.get(name)
        provider = copy.copy(shared)
        provider.config = dict(shared.config)
        provider.configure(credentials or {})
        return provider

    def infos(self) -> list[ProviderInfo]:
        return [self.get(name).info() for name in self.names()]
