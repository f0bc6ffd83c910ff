import json

import httpx
import pytest

from selfhosted import domains
from selfhosted.domains import (
    CloudflareDNS,
    detect_dns_provider,
    provider_for_nameservers,
    root_domain,
    should_setup_dns,
    subdomain,
    wait_for_dns,
)
from selfhosted.errors import AuthError, UpstreamError


@pytest.mark.parametrize(
    "domain, root, sub",
    [
        ("example.com", "example.com", "@"),
        ("app.example.com", "example.com", "app"),
        ("a.b.example.com.", "example.com", "a.b"),
        ("localhost", "", "@"),
    ],
)
def test_root_and_subdomain(domain, root, sub):
    assert root_domain(domain) == root
    assert subdomain(domain) == sub


def test_provider_for_nameservers():
    assert provider_for_nameservers(["ns1.digitalocean.com"]) == ("digitalocean", "DigitalOcean")
    assert provider_for_nameservers(["ns-12.awsdns-01.org"]) == ("aws", "AWS Route 53")
    assert provider_for_nameservers(["ns1.example.net"]) == ("", "Unknown")
    assert provider_for_nameservers([]) == ("", "Unknown")


@pytest.mark.parametrize(
    "mode, provider, detected, expected",
    [
        ("auto", "digitalocean", "digitalocean", True),
        ("auto", "digitalocean", "cloudflare", False),
        ("auto", "digitalocean", "", True),
        ("", "vultr", "VULTR", True),
        ("skip", "digitalocean", "digitalocean", False),
        ("force", "digitalocean", "cloudflare", True),
        ("cloudflare", "vultr", "cloudflare", True),
    ],
)
def test_should_setup_dns(mode, provider, detected, expected):
    assert should_setup_dns(mode, provider, detected) is expected


def test_detect_dns_provider(monkeypatch):
    monkeypatch.setattr(domains, "lookup_nameservers", lambda d: ["kim.ns.cloudflare.com"])
    assert detect_dns_provider("app.example.com") == {
        "provider": "cloudflare",
        "name": "Cloudflare",
        "nameservers": ["kim.ns.cloudflare.com"],
    }


def test_wait_for_dns(monkeypatch):
    answers = iter([None, "10.0.0.1", "192.0.2.1"])
    monkeypatch.setattr(domains, "resolve_dns_a", lambda d: next(answers))
    monkeypatch.setattr(domains.time, "sleep", lambda s: None)
    logged = []
    assert wait_for_dns("a.example.com", "192.0.2.1", retries=5, log=logged.append)
    assert logged[-1] == "DNS verified: 'a.example.com' -> '192.0.2.1'"

    monkeypatch.setattr(domains, "resolve_dns_a", lambda d: None)
    assert not wait_for_dns("a.example.com", "192.0.2.1", retries=2, log=logged.append)


def cloudflare(handler) -> CloudflareDNS:
    client = httpx.Client(base_url=domains.CLOUDFLARE_API, transport=httpx.MockTransport(handler))
    return CloudflareDNS("cf-token", client=client)


ZONES = [{"id": "z1", "name": "example.com"}, {"id": "z2", "name": "dev.example.com"}]


def test_cloudflare_find_zone_prefers_longest_match():
    cf = cloudflare(lambda request: httpx.Response(200, json={"success": True, "result": ZONES}))
    assert cf.find_zone("app.dev.example.com")["id"] == "z2"
    assert cf.find_zone("example.com")["id"] == "z1"
    with pytest.raises(UpstreamError, match="No Cloudflare zone"):
        cf.find_zone("example.org")


def test_cloudflare_create_record_payload():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True, "result": {"id": "r1"}})

    assert cloudflare(handler).create_record("z1", "A", "app.example.com", "192.0.2.1", proxied=True) == {"id": "r1"}
    assert seen == [
        (
            "/client/v4/zones/z1/dns_records",
            {"type": "A", "name": "app.example.com", "content": "192.0.2.1", "ttl": 1, "proxied": True},
        )
    ]


def test_cloudflare_errors():
    with pytest.raises(AuthError, match="token required"):
        CloudflareDNS("")

    cf = cloudflare(lambda request: httpx.Response(403, json={}))
    with pytest.raises(AuthError):
        cf.find_zone("example.com")

    cf = cloudflare(
        lambda request: httpx.Response(400, json={"success": False, "errors": [{"message": "bad zone"}]})
    )
    with pytest.raises(UpstreamError, match="bad zone"):
        cf.find_zone("example.com")

    def offline(request):
        raise httpx.ConnectError("offline")

    with pytest.raises(UpstreamError, match="request failed"):
        cloudflare(offline).find_zone("example.com")
