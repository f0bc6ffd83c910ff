"""HTTP API consumed by the wizard client.

Handlers are sync functions so blocking provider and DNS calls run in the
threadpool. Deployments run on their own threads; the API only reads their
sessions.
"""

from typing import Any, Callable

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .apps import App, load_catalog
from .config import Settings
from .domains import detect_dns_provider
from .errors import AuthError, SelfhostedError, UpstreamError
from .orchestrator import start_deployment
from .providers import ProviderRegistry
from .session import PTYRegistry, SessionStore
from .types import DeploymentRequest, Specs
from .utils import log

KEEPALIVE_INTERVAL = 15


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeployBody(CamelModel):
    app: str
    provider: str
    region: str = ""
    size: str = ""
    domain: str = ""
    server_name: str = ""
    email: str = ""
    enable_ssl: bool = True
    dns_mode: str = "auto"
    cloudflare_token: str = Field(default="", repr=False)
    cloudflare_proxied: bool = False
    credentials: dict[str, str] = Field(default_factory=dict, repr=False)
    answers: dict[str, Any] = Field(default_factory=dict)
    min_cpus: int = 0
    min_memory: int = 0
    min_disk: int = 0


class ProviderConfigBody(CamelModel):
    provider: str
    config: dict[str, Any] = Field(default_factory=dict, repr=False)


class PTYInputBody(CamelModel):
    session_id: str = ""
    data_b64: str = ""


def _error(status: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": kind, "message": message})


def build_request(body: DeployBody, app: App, settings: Settings) -> DeploymentRequest:
    """Turn a submitted deployment into an immutable request.

    Minimum spec overrides only apply where given; the app's minimum fills
    the rest.
    """
    specs = Specs(
        cpus=body.min_cpus or app.min_specs.cpus,
        memory_mb=body.min_memory or app.min_specs.memory_mb,
        disk_gb=body.min_disk or app.min_specs.disk_gb,
    )
    dns_mode = body.dns_mode.strip().lower() or "auto"
    if dns_mode not in ("auto", "skip", "force", "cloudflare"):
        raise ValueError(f"Unknown DNS mode '{body.dns_mode}'")
    return DeploymentRequest(
        app=app.name,
        provider=body.provider,
        region=body.region.strip(),
        size=body.size.strip(),
        domain=body.domain.strip().lower().strip("."),
        server_name=body.server_name.strip(),
        email=body.email.strip(),
        enable_ssl=body.enable_ssl,
        dns_mode=dns_mode,
        cloudflare_token=body.cloudflare_token or settings.cloudflare_token,
        cloudflare_proxied=body.cloudflare_proxied,
        credentials=body.credentials,
        min_specs=specs,
        answers=body.answers,
    )


def create_app(
    settings: Settings | None = None,
    *,
    store: SessionStore | None = None,
    catalog: dict[str, App] | None = None,
    providers: ProviderRegistry | None = None,
    ptys: PTYRegistry | None = None,
    dns_detector: Callable[[str], dict] = detect_dns_provider,
    deployer_options: dict | None = None,
) -> FastAPI:
    """Build the API application.

    :param deployer_options: Extra keyword arguments for each Deployer
    """
    settings = settings or Settings()
    store = store or SessionStore()
    catalog = catalog if catalog is not None else load_catalog()
    providers = providers or ProviderRegistry(settings.terraform_dir)
    ptys = ptys or PTYRegistry()
    deployer_options = deployer_options or {}

    api = FastAPI(title="selfhosted", description="Deploy self-hosted apps to cloud VMs")
    api.state.settings = settings
    api.state.store = store

    @api.exception_handler(AuthError)
    def auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return _error(401, exc.kind, str(exc))

    @api.exception_handler(UpstreamError)
    def upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
        return _error(502, exc.kind, str(exc))

    @api.exception_handler(SelfhostedError)
    def selfhosted_error(request: Request, exc: SelfhostedError) -> JSONResponse:
        return _error(500, exc.kind, str(exc))

    @api.get("/api/apps")
    def list_apps():
        return [catalog[name].info() for name in sorted(catalog)]

    @api.get("/api/providers")
    def list_providers():
        return providers.infos()

    @api.get("/api/regions")
    def list_regions(provider: str = ""):
        if provider not in providers:
            return []
        return providers.get(provider).list_regions()

    @api.get("/api/sizes")
    def list_sizes(provider: str = "", region: str = ""):
        if provider not in providers:
            return []
        return providers.get(provider).list_sizes(region or None)

    @api.get("/api/providers/check")
    def check_provider(provider: str = ""):
        if provider not in providers:
            return _error(400, "BadRequest", f"Unknown provider '{provider}'")
        p = providers.get(provider)
        return {
            "provider": provider,
            "hasCredentials": p.has_credentials(),
            "needsConfig": p.needs_config,
        }

    @api.post("/api/providers/config")
    def configure_provider(body: ProviderConfigBody):
        if body.provider not in providers:
            return _error(400, "BadRequest", f"Unknown provider '{body.provider}'")
        p = providers.configure(body.provider, body.config)
        log(f"Updated configuration for provider '{body.provider}'")
        return {"provider": body.provider, "hasCredentials": p.has_credentials()}

    @api.get("/api/domains/check")
    def check_domain(domain: str = ""):
        domain = domain.strip().lower().strip(".")
        if not domain:
            return _error(400, "BadRequest", "domain is required")
        detected = dns_detector(domain)
        return {
            "domain": domain,
            "provider": "cloudflare" if detected.get("provider") == "cloudflare" else "other",
            "providerName": detected.get("name", "Unknown"),
            "nameservers": detected.get("nameservers", []),
        }

    @api.post("/api/deploy", status_code=202)
    def deploy(body: DeployBody):
        app = catalog.get(body.app)
        if app is None:
            return _error(400, "BadRequest", f"Unknown app '{body.app}'")
        if body.provider not in providers:
            return _error(400, "BadRequest", f"Unknown provider '{body.provider}'")
        if not app.supports(body.provider):
            return _error(400, "BadRequest", f"'{app.name}' cannot be deployed to '{body.provider}'")
        try:
            request = build_request(body, app, settings)
        except ValueError as e:
            return _error(400, "BadRequest", str(e))
        session = start_deployment(
            store,
            request,
            app,
            providers.for_deployment(body.provider, request.credentials),
            ptys=ptys,
            provision_timeout=settings.provision_timeout,
            ssh_timeout=settings.ssh_timeout,
            **deployer_options,
        )
        log(f"Started session {session.id} for '{app.name}' on '{body.provider}'")
        return {"sessionId": session.id}

    def get_session(session_id: str):
        session = store.get(session_id)
        if session is None:
            return None, _error(404, "NotFound", f"Unknown session '{session_id}'")
        return session, None

    @api.get("/api/sessions")
    def list_sessions():
        return [s.to_dict() for s in store.list()]

    @api.get("/api/sessions/{session_id}")
    def session_status(session_id: str):
        session, missing = get_session(session_id)
        return missing or session.to_dict()

    @api.get("/api/sessions/{session_id}/logs")
    def session_logs(session_id: str, offset: int = 0):
        session, missing = get_session(session_id)
        if missing:
            return missing
        lines, next_offset = session.lines(offset)
        return {"lines": lines, "offset": next_offset}

    @api.get("/api/sessions/{session_id}/events")
    def session_events(session_id: str, offset: int = 0):
        session, missing = get_session(session_id)
        if missing:
            return missing

        def stream():
            position = offset
            while True:
                lines, position = session.lines(position)
                for line in lines:
                    yield f"data: {line}\n\n"
                if lines:
                    continue
                if session.finished:
                    break
                if not session.wait_for_lines(position, KEEPALIVE_INTERVAL):
                    yield ": keep-alive\n\n"

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @api.post("/api/sessions/{session_id}/cancel")
    def cancel_session(session_id: str):
        session, missing = get_session(session_id)
        if missing:
            return missing
        if not session.finished:
            session.cancel()
            session.append("Cancellation requested by client")
        return {"id": session.id, "state": session.state, "cancelled": session.cancelled}

    @api.post("/api/pty/input")
    def pty_input(body: PTYInputBody):
        if not body.session_id or not body.data_b64:
            return _error(400, "BadRequest", "sessionId and dataB64 are required")
        try:
            ptys.write_base64(body.session_id, body.data_b64)
        except ValueError as e:
            return _error(400, "BadRequest", str(e))
        except KeyError:
            return _error(404, "NotFound", "unknown PTY session")
        return Response(status_code=204)

    @api.get("/api/pty/output")
    def pty_output(session_id: str = Query(default="", alias="sessionId"), offset: int = 0):
        session, missing = get_session(session_id)
        if missing:
            return missing
        chunks, next_offset = session.pty_chunks(offset)
        return {"chunks": chunks, "offset": next_offset}

    return api
