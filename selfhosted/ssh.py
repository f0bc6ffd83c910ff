"""Remote execution over SSH: one connection per instance, streamed output."""

import base64
import hashlib
import io
import socket
import threading
import time
from pathlib import Path
from typing import Callable

import paramiko
from fabric import Connection
from invoke.exceptions import CommandTimedOut

from .errors import CommandError, ConnectError
from .utils import LogStream, log

CONNECT_TIMEOUT = 30
PTY_TERM = "xterm-256color"
PTY_WIDTH = 120
PTY_HEIGHT = 40
PTY_READ_SIZE = 4096
PTY_TIMEOUT = 30 * 60
COMMAND_TIMEOUT = 30 * 60
PORT_POLL_INTERVAL = 5

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


def load_private_key(private_key: str) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key string.

    :raises ConnectError: If the key cannot be parsed by any supported type
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConnectError("Invalid SSH private key")


def generate_keypair(comment: str = "selfhosted") -> tuple[str, str]:
    """Generate a fresh RSA keypair for one deployment.

    :return: (private_key_pem, public_key_openssh)
    """
    key = paramiko.RSAKey.generate(4096)
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue(), f"{key.get_name()} {key.get_base64()} {comment}"


def public_key_fingerprint(public_key: str) -> str:
    """:return: colon separated MD5 fingerprint of an OpenSSH public key"""
    decoded = base64.b64decode(public_key.split()[1])
    digest = hashlib.md5(decoded).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, 32, 2))


def wait_for_port(
    host: str,
    port: int = 22,
    timeout: float = 300,
    interval: float = PORT_POLL_INTERVAL,
) -> bool:
    """Poll a TCP port until it accepts a connection.

    :return: True once reachable, False if timeout expired first
    """
    start = time.monotonic()
    while True:
        try:
            with socket.create_connection((host, port), timeout=5):
                return True
        except OSError:
            pass
        if time.monotonic() - start + interval > timeout:
            return False
        time.sleep(interval)


class PTYProcess:
    """A command running under a remote PTY.

    Output is pumped by a background thread into the on_data callback.
    """

    def __init__(self, command: str, channel: paramiko.Channel, on_data: Callable[[bytes], None]):
        self.command = command
        self._channel = channel
        self._on_data = on_data
        self._output = bytearray()
        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()

    def _pump(self) -> None:
        while True:
            chunk = self._channel.recv(PTY_READ_SIZE)
            if not chunk:
                break
            self._output.extend(chunk)
            if self._on_data is not None:
                self._on_data(chunk)

    def write(self, data: bytes) -> None:
        self._channel.sendall(data)

    def close(self) -> None:
        """Close stdin of the remote command."""
        if not self._channel.closed:
            self._channel.shutdown_write()

    def wait(self, timeout: float = PTY_TIMEOUT) -> None:
        """Wait for the command to exit.

        :raises CommandError: On non-zero exit, or if timeout expires
        """
        self._reader.join(timeout)
        if self._reader.is_alive():
            self._channel.close()
            raise CommandError(self.command, -1, "PTY command timed out")
        status = self._channel.recv_exit_status()
        if status != 0:
            output = self._output.decode("utf-8", errors="replace")
            raise CommandError(self.command, status, output)


class SSHRunner:
    """Owns one authenticated SSH connection to one instance.

    Connection failures are raised immediately as ConnectError; retrying a
    freshly booted host is left to the caller.

    :param host: Instance IP or hostname
    :param user: SSH user
    :param private_key: Private key text (PEM or OpenSSH format)
    :param log: Called with every progress and output line
    :param command_timeout: Seconds before a non-interactive command is abandoned
    """

    def __init__(
        self,
        host: str,
        user: str,
        private_key: str,
        log: Callable[[str], None] = log,
        connect_timeout: int = CONNECT_TIMEOUT,
        command_timeout: float = COMMAND_TIMEOUT,
    ):
        self.host = host
        self.user = user
        self._private_key = private_key
        self._log = log
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._conn: Connection | None = None

    def connect(self) -> None:
        pkey = load_private_key(self._private_key)
        conn = Connection(
            self.host,
            user=self.user,
            connect_timeout=self._connect_timeout,
            connect_kwargs={
                "pkey": pkey,
                "look_for_keys": False,
                "allow_agent": False,
                "banner_timeout": self._connect_timeout,
            },
        )
        conn.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            conn.open()
        except (paramiko.SSHException, OSError, EOFError) as e:
            conn.close()
            raise ConnectError(f"SSH connection to '{self.host}' failed: {e}") from e
        self._conn = conn

    def _require(self) -> Connection:
        if self._conn is None:
            raise ConnectError("SSH runner is not connected")
        return self._conn

    def _execute(self, cmd: str) -> tuple[str, str]:
        conn = self._require()
        self._log(f"Running: {cmd}")
        out = LogStream(self._log)
        err = LogStream(self._log)
        try:
            result = conn.run(
                cmd, hide=False, warn=True, pty=False, in_stream=False,
                out_stream=out, err_stream=err, timeout=self._command_timeout,
            )
        except CommandTimedOut as e:
            raise CommandError(cmd, -1, f"timed out after {e.timeout}s") from e
        finally:
            out.flush()
            err.flush()
        if result.failed:
            output = "\n".join(filter(None, [out.getvalue(), err.getvalue()]))
            raise CommandError(cmd, result.exited, output)
        return result.stdout, result.stderr

    def run(self, cmd: str) -> None:
        """Run one command, streaming its output line by line.

        :raises CommandError: If the command exits non-zero
        """
        self._execute(cmd)

    def run_many(self, cmds: list[str]) -> None:
        """Run commands in order, stopping at the first failure.

        :raises CommandError: For the first command that exits non-zero
        """
        for cmd in cmds:
            self._execute(cmd)

    def run_with_output(self, cmd: str) -> str:
        """Run a command, streaming its output, and return its stdout."""
        stdout, _ = self._execute(cmd)
        return stdout

    def run_pty(self, cmd: str, on_data: Callable[[bytes], None]) -> PTYProcess:
        """Start a command under a PTY for interactive or TUI steps."""
        conn = self._require()
        self._log(f"Running (tty): {cmd}")
        transport = conn.client.get_transport()
        if transport is None or not transport.is_active():
            raise ConnectError(f"SSH connection to '{self.host}' is closed")
        channel = transport.open_session()
        channel.get_pty(term=PTY_TERM, width=PTY_WIDTH, height=PTY_HEIGHT)
        channel.exec_command(cmd)
        return PTYProcess(cmd, channel, on_data)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SSHRunner":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def save_private_key(path: str | Path, private_key: str) -> Path:
    """Write a private key readable only by the current user."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(private_key)
    path.chmod(0o600)
    return path
