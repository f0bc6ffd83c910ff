"""Deployment sessions: append-only log, PTY output buffer and PTY input registry.

A session has exactly one writer (its orchestrator thread) and any number of
readers (HTTP pollers, SSE streams). Readers track an offset into the log or
the PTY chunk list and only ever receive the suffix past that offset.
"""

import base64
import binascii
import codecs
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

from .types import Instance
from .utils import logger, redact

PTY_SESSION_MARKER = "[SELFHOSTED::PTY_SESSION]"
PTY_CHUNK_MARKER = "[SELFHOSTED::PTY]"
PTY_END_MARKER = "[SELFHOSTED::PTY_END]"
DONE_MARKER = "[SELFHOSTED::DONE]"
ERROR_MARKER = "[SELFHOSTED::ERROR]"

FAILURE_TAIL_LINES = 20


class PTYWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


@dataclass
class Failure:
    kind: str
    message: str
    tail: list[str]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "tail": self.tail}


class DeploymentSession:
    def __init__(self, session_id: str | None = None, app: str = "", provider: str = ""):
        self.id = session_id or uuid.uuid4().hex
        self.app = app
        self.provider = provider
        self.state = "pending"
        self.instance: Instance | None = None
        self.failure: Failure | None = None
        self.created_at = time.time()
        self._lines: list[str] = []
        self._pty_chunks: list[bytes] = []
        self._cond = threading.Condition()
        self._cancel = threading.Event()

    def append(self, text: str) -> None:
        """Append one or more log lines. Embedded newlines split into lines."""
        lines = [redact(line.rstrip("\r")) for line in str(text).split("\n")]
        with self._cond:
            self._lines.extend(lines)
            self._cond.notify_all()
        for line in lines:
            logger.info(f"[{self.id[:8]}] {line}")

    def lines(self, offset: int = 0) -> tuple[list[str], int]:
        """Return lines past offset and the offset to use next time.

        An offset beyond the end returns no lines and keeps the offset, so a
        poller never observes fewer lines than before.
        """
        with self._cond:
            offset = max(0, offset)
            new = self._lines[offset:]
            return new, max(offset, len(self._lines))

    def __len__(self) -> int:
        with self._cond:
            return len(self._lines)

    def tail(self, n: int = FAILURE_TAIL_LINES) -> list[str]:
        with self._cond:
            return self._lines[-n:]

    def wait_for_lines(self, offset: int, timeout: float) -> bool:
        """Block until the log grows past offset, the session ends, or timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: len(self._lines) > offset or self.finished, timeout=timeout
            )

    def append_pty(self, chunk: bytes) -> None:
        """Store a raw PTY chunk and add it to the log as a marker line.

        Marker lines are not mirrored to the logger.
        """
        if not chunk:
            return
        with self._cond:
            self._pty_chunks.append(bytes(chunk))
            self._lines.append(f"{PTY_CHUNK_MARKER} {base64.b64encode(chunk).decode()}")
            self._cond.notify_all()

    def pty_chunks(self, offset: int = 0) -> tuple[list[str], int]:
        """Return base64 PTY chunks past offset and the next offset."""
        with self._cond:
            offset = max(0, offset)
            new = [base64.b64encode(c).decode() for c in self._pty_chunks[offset:]]
            return new, max(offset, len(self._pty_chunks))

    def set_state(self, state: str) -> None:
        with self._cond:
            self.state = state
            self._cond.notify_all()

    def fail(self, kind: str, message: str) -> Failure:
        failure = Failure(kind=kind, message=redact(message), tail=self.tail())
        with self._cond:
            self.failure = failure
            self.state = "failed"
            self._cond.notify_all()
        return failure

    @property
    def finished(self) -> bool:
        return self.state in ("completed", "failed")

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def to_dict(self) -> dict:
        instance = None
        if self.instance:
            instance = {
                "id": self.instance.id,
                "name": self.instance.name,
                "ip": self.instance.ip,
                "status": self.instance.status,
            }
        return {
            "id": self.id,
            "app": self.app,
            "provider": self.provider,
            "state": self.state,
            "lines": len(self),
            "instance": instance,
            "failure": self.failure.to_dict() if self.failure else None,
        }


class SessionStore:
    """In-memory registry of sessions for the lifetime of the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, DeploymentSession] = {}

    def create(self, app: str = "", provider: str = "") -> DeploymentSession:
        session = DeploymentSession(app=app, provider=provider)
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> DeploymentSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def list(self) -> list[DeploymentSession]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at)


class PTYRegistry:
    """Maps interactive PTY session ids to the stdin of the running command."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._writers: dict[str, PTYWriter] = {}

    def register(self, pty_id: str, writer: PTYWriter) -> None:
        with self._lock:
            self._writers[pty_id] = writer

    def write(self, pty_id: str, data: bytes) -> None:
        with self._lock:
            writer = self._writers.get(pty_id)
        if writer is None:
            raise KeyError("unknown PTY session")
        writer.write(data)

    def write_base64(self, pty_id: str, data_b64: str) -> None:
        """Decode base64 input and forward it to the PTY.

        :raises ValueError: If data_b64 is not valid base64
        :raises KeyError: If no PTY is registered under pty_id
        """
        try:
            data = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("invalid base64") from e
        self.write(pty_id, data)

    def close(self, pty_id: str) -> None:
        with self._lock:
            writer = self._writers.pop(pty_id, None)
        if writer is not None:
            writer.close()

    def __contains__(self, pty_id: str) -> bool:
        with self._lock:
            return pty_id in self._writers


class Utf8ChunkDecoder:
    """Decode a byte stream delivered in arbitrary chunks as UTF-8.

    Bytes of a multi-byte character split across chunks are held back until
    the rest arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk)

    def decode_base64(self, chunk_b64: str) -> str:
        return self.decode(base64.b64decode(chunk_b64))

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)
