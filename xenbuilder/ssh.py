"""SSH helpers (paramiko) used to reach dom0 and the guest."""

from __future__ import annotations

import select
import socketserver
import threading
from pathlib import Path
from typing import Optional, Tuple, Union

import paramiko

from xenbuilder.exceptions import BuildError
from xenbuilder.utils import log


def load_signer(path: Union[str, Path]) -> paramiko.PKey:
    """Load a private key file, raising BuildError when it is not a usable signer."""
    key_path = Path(path).expanduser()
    try:
        return paramiko.PKey.from_path(key_path)
    except (paramiko.SSHException, paramiko.UnknownKeyType) as exc:
        raise BuildError(f"{key_path}: {exc}") from exc
    except (OSError, ValueError, TypeError) as exc:
        raise BuildError(f"{key_path}: not a valid private key ({exc})") from exc


def connect(
    host: str,
    port: int,
    username: str,
    password: Optional[str] = None,
    key_path: Optional[str] = None,
    timeout: float = 10.0,
) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kwargs = {
        "hostname": host,
        "port": port,
        "username": username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if key_path:
        kwargs["pkey"] = load_signer(key_path)
    else:
        kwargs["password"] = password
    try:
        client.connect(**kwargs)
    except Exception:
        client.close()
        raise
    return client


def run_command(client: paramiko.SSHClient, command: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Run a command and return (exit_status, stdout, stderr)."""
    log("DEBUG", f"Running over SSH: {command}")
    _, stdout, stderr = client.exec_command(command, timeout=timeout)
    out = stdout.read().decode("utf-8", errors="replace")
    err = stderr.read().decode("utf-8", errors="replace")
    status = stdout.channel.recv_exit_status()
    return status, out, err


class SSHCommunicator:
    """Command channel to the guest handed to provisioners."""

    def __init__(self, client: paramiko.SSHClient) -> None:
        self.client = client

    def execute(self, command: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        return run_command(self.client, command, timeout=timeout)

    def close(self) -> None:
        self.client.close()


class _ForwardServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class _ForwardHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        forwarder: PortForwarder = self.server.forwarder  # type: ignore[attr-defined]
        try:
            chan = forwarder.transport.open_channel(
                "direct-tcpip",
                (forwarder.remote_host, forwarder.remote_port),
                self.request.getpeername(),
            )
        except paramiko.SSHException as exc:
            log("WARN", f"Forward to {forwarder.remote_host}:{forwarder.remote_port} failed: {exc}")
            return
        if chan is None:
            return
        try:
            while not forwarder.stopped:
                readable, _, _ = select.select([self.request, chan], [], [], 1.0)
                if self.request in readable:
                    data = self.request.recv(16384)
                    if not data:
                        break
                    chan.sendall(data)
                if chan in readable:
                    data = chan.recv(16384)
                    if not data:
                        break
                    self.request.sendall(data)
        except OSError as exc:
            log("DEBUG", f"Forwarded connection closed: {exc}")
        finally:
            chan.close()


class PortForwarder:
    """Forward a local TCP port through an SSH connection to a remote address."""

    def __init__(
        self,
        client: paramiko.SSHClient,
        local_port: int,
        remote_host: str,
        remote_port: int,
        bind_host: str = "127.0.0.1",
    ) -> None:
        transport = client.get_transport()
        if transport is None:
            raise BuildError("SSH connection is not active")
        self.transport = transport
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.bind_host = bind_host
        self.stopped = False
        self._server: Optional[_ForwardServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._server = _ForwardServer((self.bind_host, self.local_port), _ForwardHandler)
        self._server.forwarder = self  # type: ignore[attr-defined]
        self._thread = threading.Thread(target=self._server.serve_forever, name="vnc-forward", daemon=True)
        self._thread.start()
        log(
            "DEBUG",
            f"Forwarding {self.bind_host}:{self.local_port} -> {self.remote_host}:{self.remote_port}",
        )

    def stop(self) -> None:
        self.stopped = True
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
