"""Host-local build steps: output directory, HTTP server, boot typing, guest access."""

from __future__ import annotations

import functools
import shutil
import threading
import time
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional

import paramiko
from jinja2 import TemplateError

from xenbuilder import ssh
from xenbuilder.config import render_template
from xenbuilder.constants import NULL_REF
from xenbuilder.exceptions import BuildError
from xenbuilder.pipeline import Step, StepAction
from xenbuilder.state import BuildState, StateKey
from xenbuilder.utils import bind_in_range, ensure_directory, log
from xenbuilder.vnc import KeyPress, VNCClient, VNCError, parse_boot_command


class StepPrepareOutputDir(Step):
    name = "prepare output directory"

    def run(self, state: BuildState) -> StepAction:
        path = Path(state.config.output_directory)
        if path.exists():
            if not path.is_dir():
                return self.fail(state, f"Output path {path} exists and is not a directory")
            if any(path.iterdir()):
                return self.fail(state, f"Output directory {path} already exists and is not empty")
        ensure_directory(path)
        state.add_cleanup(f"remove output directory {path}", lambda: shutil.rmtree(path, ignore_errors=True))
        return StepAction.CONTINUE


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:
        log("DEBUG", f"HTTP {self.address_string()} {format % args}")


def _stop_http_server(server: ThreadingHTTPServer, thread: threading.Thread) -> None:
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


class StepHTTPServer(Step):
    """Serve ``http_directory`` to the installer on the first free port in range."""

    name = "HTTP server"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        ui = state.ui
        if not cfg.http_directory:
            state.put(StateKey.HTTP_PORT, 0)
            return StepAction.CONTINUE

        directory = Path(cfg.http_directory)
        if not directory.is_dir():
            return self.fail(state, f"http_directory {directory} is not a directory")

        handler = functools.partial(_QuietHandler, directory=str(directory))
        try:
            server, port = bind_in_range(
                lambda candidate: ThreadingHTTPServer(("0.0.0.0", candidate), handler),
                cfg.http_port_min,
                cfg.http_port_max,
            )
        except BuildError as exc:
            return self.fail(state, f"Error starting HTTP server: {exc}")

        thread = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
        thread.start()
        state.add_cleanup("stop HTTP server", lambda: _stop_http_server(server, thread), always=True)
        state.put(StateKey.HTTP_PORT, port)
        ui.say(f"Serving {directory} on HTTP port {port}")
        return StepAction.CONTINUE


class StepBootWait(Step):
    name = "boot wait"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        seconds = cfg.boot_wait.total_seconds()
        if seconds > 0:
            state.ui.say(f"Waiting {cfg.raw_boot_wait} for boot...")
            if state.cancel_token.wait(seconds):
                return StepAction.HALT
        return StepAction.CONTINUE


class StepTypeBootCommand(Step):
    """Render each boot command fragment and type it over the forwarded VNC port."""

    name = "type boot command"
    key_interval = 0.1

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        ui = state.ui
        token = state.cancel_token
        if not cfg.boot_command:
            return StepAction.CONTINUE

        context = {
            "HTTPIP": cfg.local_ip,
            "HTTPPort": state.get(StateKey.HTTP_PORT, 0),
            "Name": cfg.instance_name,
        }
        port = state.require(StateKey.LOCAL_VNC_PORT)
        ui.say(f"Connecting to VNC on local port {port}")
        try:
            client = VNCClient.connect("127.0.0.1", port, key_interval=self.key_interval)
        except VNCError as exc:
            return self.fail(state, f"Error connecting to VNC: {exc}")

        try:
            ui.say("Typing boot command...")
            for index, fragment in enumerate(cfg.boot_command):
                try:
                    text = render_template(fragment, context)
                except TemplateError as exc:
                    return self.fail(state, f"Error rendering boot_command[{index}]: {exc}")
                for action in parse_boot_command(text):
                    if token.cancelled:
                        return StepAction.HALT
                    if isinstance(action, KeyPress):
                        client.press(action)
                    elif token.wait(action.seconds):
                        return StepAction.HALT
        except OSError as exc:
            return self.fail(state, f"Error typing boot command: {exc}")
        finally:
            client.close()
        return StepAction.CONTINUE


def guest_ip(api, vm: str) -> Optional[str]:
    """Return the first IPv4 address the guest agent reports, if any."""
    metrics = api.VM.get_guest_metrics(vm)
    if not metrics or metrics == NULL_REF:
        return None
    networks = api.VM_guest_metrics.get_networks(metrics)
    for key in sorted(networks):
        if key.endswith("/ip") and networks[key]:
            return networks[key]
    return None


class StepWaitForIp(Step):
    name = "wait for guest IP"
    interval = 5.0

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        session = state.session
        token = state.cancel_token
        vm = session.get_vm(state.require(StateKey.INSTANCE_UUID))

        state.ui.say("Waiting for the instance to report an IP address...")
        deadline = time.monotonic() + cfg.ssh_wait_timeout.total_seconds()
        while time.monotonic() < deadline:
            address = guest_ip(session.api, vm)
            if address:
                state.ui.say(f"Instance IP address: {address}")
                state.put(StateKey.INSTANCE_IP, address)
                return StepAction.CONTINUE
            if token.wait(self.interval):
                return StepAction.HALT
        return self.fail(state, f"Timed out after {cfg.raw_ssh_wait_timeout} waiting for the instance IP address")


class StepConnectSSH(Step):
    """Retry SSH to the guest until it accepts the configured credentials."""

    name = "connect SSH"
    interval = 5.0

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        token = state.cancel_token
        host = state.require(StateKey.INSTANCE_IP)

        state.ui.say(f"Waiting for SSH on {host}:{cfg.ssh_port}...")
        deadline = time.monotonic() + cfg.ssh_wait_timeout.total_seconds()
        last_error: Optional[Exception] = None
        while time.monotonic() < deadline:
            try:
                client = ssh.connect(
                    host,
                    cfg.ssh_port,
                    cfg.ssh_username,
                    password=cfg.ssh_password or None,
                    key_path=cfg.ssh_key_path or None,
                )
            except BuildError as exc:
                return self.fail(state, f"Error loading SSH key: {exc}")
            except (paramiko.SSHException, OSError) as exc:
                last_error = exc
                state.ui.debug(f"SSH not available yet: {exc}")
                if token.wait(self.interval):
                    return StepAction.HALT
                continue
            communicator = ssh.SSHCommunicator(client)
            state.put(StateKey.COMMUNICATOR, communicator)
            state.add_cleanup("close guest SSH connection", communicator.close, always=True)
            state.ui.say("Connected to SSH")
            return StepAction.CONTINUE
        return self.fail(state, f"Timed out waiting for SSH: {last_error}")


class StepProvision(Step):
    name = "provision"

    def run(self, state: BuildState) -> StepAction:
        provisioners = state.get(StateKey.PROVISIONERS) or []
        if not provisioners:
            return StepAction.CONTINUE
        communicator = state.require(StateKey.COMMUNICATOR)
        for provisioner in provisioners:
            if state.cancel_token.cancelled:
                return StepAction.HALT
            state.ui.say(f"Provisioning with {provisioner.describe()}")
            try:
                provisioner.provision(state.ui, communicator)
            except BuildError as exc:
                return self.fail(state, f"Error provisioning with {provisioner.describe()}: {exc}")
        return StepAction.CONTINUE
