"""DNS helpers: nameserver detection, propagation checks and Cloudflare records."""

import time

import dns.exception
import dns.resolver
import httpx

from .errors import AuthError, UpstreamError
from .utils import log

DNS_VERIFY_RETRIES = 30
DNS_VERIFY_DELAY = 10
CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_TOKEN_URL = "https://dash.cloudflare.com/profile/api-tokens"

# (nameserver substring, provider key, display name); first match wins
NAMESERVER_PROVIDERS = [
    ("digitalocean.com", "digitalocean", "DigitalOcean"),
    ("cloudflare.com", "cloudflare", "Cloudflare"),
    ("awsdns", "aws", "AWS Route 53"),
    ("googledomains.com", "gcp", "Google Cloud DNS"),
    ("google.com", "gcp", "Google Cloud DNS"),
    ("azure-dns", "azure", "Azure DNS"),
    ("linode.com", "linode", "Linode"),
    ("vultr.com", "vultr", "Vultr"),
    ("hetzner.com", "hetzner", "Hetzner"),
    ("hetzner-dns", "hetzner", "Hetzner"),
    ("scaleway.com", "scaleway", "Scaleway"),
    ("upcloud.com", "upcloud", "UpCloud"),
    ("ovh.net", "ovh", "OVH"),
    ("ovh.com", "ovh", "OVH"),
    ("namecheap.com", "namecheap", "Namecheap"),
    ("domaincontrol.com", "godaddy", "GoDaddy"),
    ("godaddy.com", "godaddy", "GoDaddy"),
    ("name.com", "namecom", "Name.com"),
    ("dnsimple.com", "dnsimple", "DNSimple"),
    ("netlify.com", "netlify", "Netlify DNS"),
    ("vercel-dns.com", "vercel", "Vercel DNS"),
    ("nsone.net", "ns1", "NS1"),
    ("afraid.org", "freedns", "FreeDNS"),
]


def root_domain(domain: str) -> str:
    """:return: last two labels of domain, or '' if it has fewer than two"""
    parts = domain.strip().strip(".").split(".")
    if len(parts) < 2:
        return ""
    return ".".join(parts[-2:])


def subdomain(domain: str) -> str:
    """:return: labels left of the root domain, or '@' for the root itself"""
    parts = domain.strip().strip(".").split(".")
    if len(parts) <= 2:
        return "@"
    return ".".join(parts[:-2])


def lookup_nameservers(domain: str) -> list[str]:
    """NS hosts for domain, walking up to parent domains until one answers."""
    labels = domain.strip().strip(".").split(".")
    for i in range(len(labels) - 1):
        name = ".".join(labels[i:])
        try:
            answer = dns.resolver.resolve(name, "NS")
        except dns.exception.DNSException:
            continue
        return sorted(str(r.target).rstrip(".").lower() for r in answer)
    return []


def provider_for_nameservers(nameservers: list[str]) -> tuple[str, str]:
    """:return: (provider key, display name), ('', 'Unknown') if unrecognised"""
    for ns in nameservers:
        for needle, key, display in NAMESERVER_PROVIDERS:
            if needle in ns:
                return key, display
    return "", "Unknown"


def detect_dns_provider(domain: str) -> dict:
    """Detect who serves DNS for domain.

    :return: dict with 'provider', 'name' and 'nameservers'
    """
    nameservers = lookup_nameservers(domain)
    key, display = provider_for_nameservers(nameservers)
    return {"provider": key, "name": display, "nameservers": nameservers}


def should_setup_dns(mode: str, provider: str, detected: str) -> bool:
    """Decide whether to create DNS records during a deployment.

    In auto mode records are only created when the domain is served by the
    provider we deploy to, so DNS managed elsewhere is never touched.
    """
    mode = (mode or "auto").strip().lower()
    if mode == "skip":
        return False
    if mode in ("force", "cloudflare"):
        return True
    p = provider.strip().lower()
    d = detected.strip().lower()
    return not (p and d and p != d)


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    resolver = dns.resolver.Resolver()
    resolver.nameservers = [nameserver]
    try:
        answer = resolver.resolve(domain, "A")
    except dns.exception.DNSException:
        return None
    return str(answer[0]) if answer else None


def wait_for_dns(
    domain: str,
    ip: str,
    retries: int = DNS_VERIFY_RETRIES,
    delay: float = DNS_VERIFY_DELAY,
    log=log,
) -> bool:
    """Poll public DNS until domain resolves to ip.

    :return: True when verified, False after all retries
    """
    for i in range(retries):
        if resolve_dns_a(domain) == ip:
            log(f"DNS verified: '{domain}' -> '{ip}'")
            return True
        log(f"Waiting for DNS... ({i + 1}/{retries})")
        time.sleep(delay)
    return False


class CloudflareDNS:
    """Minimal Cloudflare API client for zone lookup and record creation."""

    def __init__(self, token: str, client: httpx.Client | None = None):
        if not token:
            raise AuthError(f"Cloudflare API token required. Create one at {CLOUDFLARE_TOKEN_URL}")
        self._client = client or httpx.Client(
            base_url=CLOUDFLARE_API,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Cloudflare API request failed: {e}") from e
        if response.status_code in (401, 403):
            raise AuthError("Cloudflare rejected the API token")
        data = response.json()
        if not data.get("success", False):
            errors = data.get("errors") or [{"message": response.text}]
            raise UpstreamError(f"Cloudflare API error: {errors[0].get('message')}")
        return data

    def find_zone(self, domain: str) -> dict:
        """Find the zone serving domain, preferring the longest matching zone name."""
        zones = self._request("GET", "/zones", params={"per_page": 50})["result"]
        domain = domain.lower().strip(".")
        matches = [
            z for z in zones
            if domain == z["name"] or domain.endswith("." + z["name"])
        ]
        if not matches:
            raise UpstreamError(f"No Cloudflare zone found for '{domain}'")
        return max(matches, key=lambda z: len(z["name"]))

    def create_record(
        self,
        zone_id: str,
        record_type: str,
        name: str,
        content: str,
        ttl: int = 0,
        proxied: bool = False,
    ) -> dict:
        payload = {
            "type": record_type,
            "name": name,
            "content": content,
            # 1 means automatic in the Cloudflare API
            "ttl": ttl or 1,
            "proxied": proxied,
        }
        return self._request("POST", f"/zones/{zone_id}/dns_records", json=payload)["result"]

