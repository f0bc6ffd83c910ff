"""httpx client for the selfhosted HTTP API.

The backend base URL is passed explicitly; with an empty base URL every
request uses a same-origin relative path, which only works with a client
that already carries a base URL (e.g. a test client).
"""

import base64
import re
from collections.abc import Iterator

import httpx

from .errors import AuthError, SelfhostedError, UpstreamError

_newline = re.compile(r"\r?\n")


def normalize_crlf(text: str) -> str:
    """Convert LF and CRLF line endings to CRLF for terminal rendering."""
    return _newline.sub("\r\n", text)


class ApiClient:
    """Thin wrapper over the API endpoints.

    :param base_url: Backend base URL; a trailing slash is ignored
    :param client: Existing httpx client to use instead of creating one
    """

    def __init__(self, base_url: str = "", client: httpx.Client | None = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, self.url(path), **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Cannot reach backend at '{self.url(path)}': {e}") from e
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            if response.status_code == 401:
                raise AuthError(message)
            if response.status_code == 502:
                raise UpstreamError(message)
            raise SelfhostedError(f"{method} {path} returned {response.status_code}: {message}")
        return response

    def _json(self, method: str, path: str, **kwargs):
        return self._request(method, path, **kwargs).json()

    def apps(self) -> list[dict]:
        return self._json("GET", "/api/apps")

    def providers(self) -> list[dict]:
        return self._json("GET", "/api/providers")

    def regions(self, provider: str) -> list[dict]:
        return self._json("GET", "/api/regions", params={"provider": provider})

    def sizes(self, provider: str, region: str = "") -> list[dict]:
        params = {"provider": provider}
        if region:
            params["region"] = region
        return self._json("GET", "/api/sizes", params=params)

    def check_provider(self, provider: str) -> dict:
        return self._json("GET", "/api/providers/check", params={"provider": provider})

    def configure_provider(self, provider: str, config: dict) -> dict:
        return self._json("POST", "/api/providers/config", json={"provider": provider, "config": config})

    def check_domain(self, domain: str) -> dict:
        return self._json("GET", "/api/domains/check", params={"domain": domain})

    def deploy(self, **body) -> str:
        """Submit a deployment; keyword names follow the API's camelCase body.

        :return: Session id
        """
        return self._json("POST", "/api/deploy", json=body)["sessionId"]

    def session(self, session_id: str) -> dict:
        return self._json("GET", f"/api/sessions/{session_id}")

    def logs(self, session_id: str, offset: int = 0) -> tuple[list[str], int]:
        data = self._json("GET", f"/api/sessions/{session_id}/logs", params={"offset": offset})
        return data["lines"], data["offset"]

    def events(self, session_id: str, offset: int = 0) -> Iterator[str]:
        """Stream log lines over SSE until the session ends. Keep-alives are skipped."""
        url = self.url(f"/api/sessions/{session_id}/events")
        try:
            with self._client.stream("GET", url, params={"offset": offset}, timeout=None) as response:
                if response.status_code >= 400:
                    response.read()
                    raise SelfhostedError(f"events stream returned {response.status_code}: {response.text}")
                for line in response.iter_lines():
                    if line.startswith("data: "):
                        yield line[len("data: "):]
                    elif line.startswith("data:"):
                        yield line[len("data:"):]
        except httpx.HTTPError as e:
            raise UpstreamError(f"Event stream from '{url}' failed: {e}") from e

    def cancel(self, session_id: str) -> dict:
        return self._json("POST", f"/api/sessions/{session_id}/cancel")

    def pty_input(self, session_id: str, data: bytes) -> None:
        self._request(
            "POST",
            "/api/pty/input",
            json={"sessionId": session_id, "dataB64": base64.b64encode(data).decode()},
        )

    def pty_output(self, session_id: str, offset: int = 0) -> tuple[list[bytes], int]:
        data = self._json("GET", "/api/pty/output", params={"sessionId": session_id, "offset": offset})
        return [base64.b64decode(c) for c in data["chunks"]], data["offset"]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
