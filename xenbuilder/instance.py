"""Build steps that act on the XenServer host through XAPI."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import paramiko
import requests
import XenAPI  # type: ignore

from xenbuilder import ssh
from xenbuilder.constants import NULL_REF
from xenbuilder.exceptions import BuildError
from xenbuilder.pipeline import Step, StepAction
from xenbuilder.state import BuildState, StateKey
from xenbuilder.utils import bind_in_range, log, parse_size_to_bytes

# XAPI transfers can run for a long time; only the connect phase is bounded.
TRANSFER_TIMEOUT = (30, None)


def _vdi_record(name: str, sr: str, size: int, vdi_type: str, description: str) -> dict:
    return {
        "name_label": name,
        "name_description": description,
        "SR": sr,
        "virtual_size": str(size),
        "type": vdi_type,
        "sharable": False,
        "read_only": False,
        "other_config": {},
        "xenstore_data": {},
        "sm_config": {},
        "tags": [],
    }


def destroy_instance(api: Any, vm: str) -> None:
    """Force the VM off, then remove it together with its disk VDIs."""
    if api.VM.get_power_state(vm) != "Halted":
        api.VM.hard_shutdown(vm)
    for vbd in api.VM.get_VBDs(vm):
        if api.VBD.get_type(vbd) != "Disk":
            continue
        vdi = api.VBD.get_VDI(vbd)
        if vdi and vdi != NULL_REF:
            api.VDI.destroy(vdi)
    api.VM.destroy(vm)


class StepUploadIso(Step):
    """Make the install media available as a VDI on the host."""

    name = "upload media"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        session = state.session
        ui = state.ui

        if session.find_vdi(cfg.iso_uuid) is not None:
            ui.say(f"Using existing media VDI {cfg.iso_uuid}")
            state.put(StateKey.ISO_VDI_UUID, cfg.iso_uuid)
            return StepAction.CONTINUE

        api = session.api
        iso_path = Path(state.require(StateKey.ISO_PATH))
        size = iso_path.stat().st_size
        try:
            sr = session.get_sr(cfg.sr_uuid)
            vdi = api.VDI.create(
                _vdi_record(f"{cfg.instance_name} media", sr, size, "user", f"Install media {iso_path.name}")
            )
            vdi_uuid = api.VDI.get_uuid(vdi)
        except XenAPI.Failure as exc:
            return self.fail(state, f"Error creating media VDI: {exc.details}")

        ui.say(f"Uploading {iso_path.name} ({size} bytes) to SR {cfg.sr_uuid}")
        try:
            with open(iso_path, "rb") as handle:
                response = requests.put(
                    f"{session.base_url}/import_raw_vdi",
                    params={"vdi": vdi, "session_id": session.handle, "format": "raw"},
                    data=handle,
                    verify=False,
                    timeout=TRANSFER_TIMEOUT,
                )
            response.raise_for_status()
        except requests.RequestException as exc:
            api.VDI.destroy(vdi)
            return self.fail(state, f"Error uploading media: {exc}")

        state.put(StateKey.ISO_VDI_UUID, vdi_uuid)
        state.add_cleanup(f"destroy media VDI {vdi_uuid}", lambda: api.VDI.destroy(vdi))
        ui.say(f"Media uploaded as VDI {vdi_uuid}")
        return StepAction.CONTINUE


class StepCreateInstance(Step):
    """Clone the template and attach root disk, install media and network."""

    name = "create instance"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        session = state.session
        api = session.api
        ui = state.ui

        ui.say(f"Creating instance {cfg.instance_name} from {cfg.clone_template}")
        try:
            template = session.get_template(cfg.clone_template)
            vm = api.VM.clone(template, cfg.instance_name)
        except (XenAPI.Failure, BuildError) as exc:
            return self.fail(state, f"Error cloning template: {getattr(exc, 'details', exc)}")

        try:
            api.VM.set_is_a_template(vm, False)
            api.VM.set_name_description(vm, f"Built by xenbuilder ({cfg.build_name})")
            api.VM.set_platform(vm, dict(cfg.platform_args))
            api.VM.set_HVM_boot_policy(vm, "BIOS order")
            api.VM.set_HVM_boot_params(vm, {"order": "cd"})

            sr = session.get_sr(cfg.sr_uuid)
            root = api.VDI.create(
                _vdi_record(
                    f"{cfg.instance_name} root",
                    sr,
                    parse_size_to_bytes(cfg.root_disk_size),
                    "system",
                    "Root disk",
                )
            )
            self._attach(api, vm, root, "0", "Disk", "RW", bootable=True)
            media = session.get_vdi(state.require(StateKey.ISO_VDI_UUID))
            self._attach(api, vm, media, "autodetect", "CD", "RO", bootable=False)

            network = session.get_network(cfg.network_uuid)
            api.VIF.create(
                {
                    "device": "0",
                    "network": network,
                    "VM": vm,
                    "MAC": "",
                    "MTU": "1500",
                    "other_config": {},
                    "qos_algorithm_type": "",
                    "qos_algorithm_params": {},
                }
            )
            uuid = api.VM.get_uuid(vm)
        except (XenAPI.Failure, BuildError) as exc:
            try:
                destroy_instance(api, vm)
            except XenAPI.Failure as cleanup_exc:
                ui.warn(f"Could not remove partially created instance: {cleanup_exc.details}")
            return self.fail(state, f"Error creating instance: {getattr(exc, 'details', exc)}")

        state.put(StateKey.INSTANCE_UUID, uuid)
        state.add_cleanup(f"destroy instance {cfg.instance_name}", lambda: destroy_instance(api, vm))
        ui.say(f"Created instance {uuid}")
        return StepAction.CONTINUE

    @staticmethod
    def _attach(api: Any, vm: str, vdi: str, userdevice: str, vbd_type: str, mode: str, bootable: bool) -> str:
        return api.VBD.create(
            {
                "VM": vm,
                "VDI": vdi,
                "userdevice": userdevice,
                "bootable": bootable,
                "mode": mode,
                "type": vbd_type,
                "unpluggable": False,
                "empty": False,
                "other_config": {},
                "qos_algorithm_type": "",
                "qos_algorithm_params": {},
            }
        )


class StepStartVmPaused(Step):
    name = "start instance paused"

    def run(self, state: BuildState) -> StepAction:
        session = state.session
        api = session.api
        vm = session.get_vm(state.require(StateKey.INSTANCE_UUID))
        state.ui.say("Starting instance paused")
        try:
            api.VM.start(vm, True, False)
            domid = api.VM.get_domid(vm)
        except XenAPI.Failure as exc:
            return self.fail(state, f"Error starting instance: {exc.details}")
        state.ui.say(f"Instance running as domain {domid}")
        return StepAction.CONTINUE


class StepForwardVncPortOverSsh(Step):
    """Tunnel the instance console from dom0 to a local port, then unpause."""

    name = "forward VNC port"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        session = state.session
        api = session.api
        vm = session.get_vm(state.require(StateKey.INSTANCE_UUID))

        try:
            domid = api.VM.get_domid(vm)
        except XenAPI.Failure as exc:
            return self.fail(state, f"Error reading instance domain: {exc.details}")

        state.ui.say(f"Connecting to dom0 at {cfg.host_ip} over SSH")
        try:
            client = ssh.connect(cfg.host_ip, 22, cfg.username, password=cfg.password)
        except (paramiko.SSHException, OSError) as exc:
            return self.fail(state, f"Error connecting to dom0 over SSH: {exc}")
        state.add_cleanup("close dom0 SSH connection", client.close, always=True)

        status, out, err = ssh.run_command(client, f"xenstore-read /local/domain/{domid}/console/vnc-port")
        if status != 0:
            return self.fail(state, f"Error reading VNC port of domain {domid}: {err.strip()}")
        try:
            remote_port = int(out.strip())
        except ValueError:
            return self.fail(state, f"Unexpected VNC port value for domain {domid}: {out.strip()!r}")

        def start_forwarder(port: int) -> ssh.PortForwarder:
            forwarder = ssh.PortForwarder(client, port, "127.0.0.1", remote_port)
            forwarder.start()
            return forwarder

        try:
            forwarder, local_port = bind_in_range(start_forwarder, cfg.vnc_port_min, cfg.vnc_port_max)
        except BuildError as exc:
            return self.fail(state, f"Error forwarding VNC port: {exc}")
        state.add_cleanup("stop VNC port forward", forwarder.stop, always=True)
        state.put(StateKey.LOCAL_VNC_PORT, local_port)
        state.ui.say(f"Instance console available on local port {local_port}")

        try:
            api.VM.unpause(vm)
        except XenAPI.Failure as exc:
            return self.fail(state, f"Error unpausing instance: {exc.details}")
        return StepAction.CONTINUE


class StepShutdownAndExport(Step):
    """Halt the instance and stream it to ``<output_directory>/<instance_name>.xva``."""

    name = "shutdown and export"
    interval = 2.0
    shutdown_timeout = 600.0

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        session = state.session
        api = session.api
        ui = state.ui
        token = state.cancel_token
        uuid = state.require(StateKey.INSTANCE_UUID)
        vm = session.get_vm(uuid)

        ui.say("Shutting down instance")
        try:
            api.VM.clean_shutdown(vm)
        except XenAPI.Failure as exc:
            ui.warn(f"Clean shutdown failed ({exc.details}); forcing power off")
            api.VM.hard_shutdown(vm)

        deadline = time.monotonic() + self.shutdown_timeout
        while api.VM.get_power_state(vm) != "Halted":
            if time.monotonic() > deadline:
                return self.fail(state, "Timed out waiting for the instance to halt")
            if token.wait(self.interval):
                return StepAction.HALT

        target = Path(cfg.output_directory) / f"{cfg.instance_name}.xva"
        ui.say(f"Exporting instance to {target}")
        try:
            with requests.get(
                f"{session.base_url}/export",
                params={"uuid": uuid, "session_id": session.handle},
                stream=True,
                verify=False,
                timeout=TRANSFER_TIMEOUT,
            ) as response:
                response.raise_for_status()
                with open(target, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if token.cancelled:
                            return StepAction.HALT
                        handle.write(chunk)
        except requests.RequestException as exc:
            return self.fail(state, f"Error exporting instance: {exc}")

        log("DEBUG", f"Export of {uuid} written to {target}")
        ui.success(f"Exported {cfg.instance_name} to {target}")
        return StepAction.CONTINUE
