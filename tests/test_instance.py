"""Tests for xenbuilder.instance module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import paramiko
import pytest
import requests
import XenAPI

from xenbuilder.constants import DEFAULT_PLATFORM_ARGS
from xenbuilder.exceptions import BuildError
from xenbuilder.instance import (
    StepCreateInstance,
    StepForwardVncPortOverSsh,
    StepShutdownAndExport,
    StepStartVmPaused,
    StepUploadIso,
    destroy_instance,
)
from xenbuilder.pipeline import StepAction
from xenbuilder.state import StateKey


@pytest.fixture
def api(session):
    return session.api


@pytest.fixture
def instance_state(build_state, session):
    session.get_vm.return_value = "OpaqueRef:vm"
    build_state.put(StateKey.INSTANCE_UUID, "vm-uuid")
    return build_state


class TestDestroyInstance:
    def test_removes_disks_and_vm(self, api):
        api.VM.get_power_state.return_value = "Running"
        api.VM.get_VBDs.return_value = ["OpaqueRef:vbd-disk", "OpaqueRef:vbd-cd"]
        api.VBD.get_type.side_effect = lambda vbd: "Disk" if vbd.endswith("disk") else "CD"
        api.VBD.get_VDI.return_value = "OpaqueRef:root"
        destroy_instance(api, "OpaqueRef:vm")
        api.VM.hard_shutdown.assert_called_once_with("OpaqueRef:vm")
        api.VDI.destroy.assert_called_once_with("OpaqueRef:root")
        api.VM.destroy.assert_called_once_with("OpaqueRef:vm")

    def test_halted_vm_not_shut_down(self, api):
        api.VM.get_power_state.return_value = "Halted"
        api.VM.get_VBDs.return_value = []
        destroy_instance(api, "OpaqueRef:vm")
        api.VM.hard_shutdown.assert_not_called()
        api.VM.destroy.assert_called_once_with("OpaqueRef:vm")


class TestStepUploadIso:
    def test_existing_vdi_reused(self, build_state, session):
        session.find_vdi.return_value = "OpaqueRef:iso"
        with patch("xenbuilder.instance.requests.put") as mock_put:
            assert StepUploadIso().run(build_state) is StepAction.CONTINUE
        mock_put.assert_not_called()
        assert build_state.get(StateKey.ISO_VDI_UUID) == "iso-uuid"

    def test_uploads_new_vdi(self, build_state, session, api, iso_file):
        session.find_vdi.return_value = None
        session.get_sr.return_value = "OpaqueRef:sr"
        api.VDI.create.return_value = "OpaqueRef:newvdi"
        api.VDI.get_uuid.return_value = "new-vdi-uuid"
        build_state.put(StateKey.ISO_PATH, str(iso_file))
        with patch("xenbuilder.instance.requests.put") as mock_put:
            assert StepUploadIso().run(build_state) is StepAction.CONTINUE
        record = api.VDI.create.call_args.args[0]
        assert record["SR"] == "OpaqueRef:sr"
        assert record["virtual_size"] == str(iso_file.stat().st_size)
        assert mock_put.call_args.args[0] == "https://10.0.0.2/import_raw_vdi"
        assert mock_put.call_args.kwargs["params"] == {
            "vdi": "OpaqueRef:newvdi",
            "session_id": "OpaqueRef:session",
            "format": "raw",
        }
        assert mock_put.call_args.kwargs["verify"] is False
        assert build_state.get(StateKey.ISO_VDI_UUID) == "new-vdi-uuid"

        build_state.run_cleanups(succeeded=False)
        api.VDI.destroy.assert_called_once_with("OpaqueRef:newvdi")

    def test_upload_failure_destroys_vdi(self, build_state, session, api, iso_file):
        session.find_vdi.return_value = None
        api.VDI.create.return_value = "OpaqueRef:newvdi"
        build_state.put(StateKey.ISO_PATH, str(iso_file))
        with patch("xenbuilder.instance.requests.put", side_effect=requests.ConnectionError("reset")):
            assert StepUploadIso().run(build_state) is StepAction.ERROR
        api.VDI.destroy.assert_called_once_with("OpaqueRef:newvdi")
        assert "Error uploading media" in str(build_state.error)

    def test_vdi_create_failure(self, build_state, session, api, iso_file):
        session.find_vdi.return_value = None
        api.VDI.create.side_effect = XenAPI.Failure(["SR_FULL", "sr-uuid"])
        build_state.put(StateKey.ISO_PATH, str(iso_file))
        assert StepUploadIso().run(build_state) is StepAction.ERROR
        assert "SR_FULL" in str(build_state.error)


class TestStepCreateInstance:
    @pytest.fixture
    def create_state(self, build_state, session, api):
        session.get_template.return_value = "OpaqueRef:tpl"
        session.get_sr.return_value = "OpaqueRef:sr"
        session.get_vdi.return_value = "OpaqueRef:iso"
        session.get_network.return_value = "OpaqueRef:net"
        api.VM.clone.return_value = "OpaqueRef:vm"
        api.VM.get_uuid.return_value = "vm-uuid"
        api.VDI.create.return_value = "OpaqueRef:root"
        build_state.put(StateKey.ISO_VDI_UUID, "iso-uuid")
        return build_state

    def test_creates_instance(self, create_state, session, api):
        assert StepCreateInstance().run(create_state) is StepAction.CONTINUE
        session.get_template.assert_called_once_with("Other install media")
        api.VM.clone.assert_called_once_with("OpaqueRef:tpl", "golden")
        api.VM.set_is_a_template.assert_called_once_with("OpaqueRef:vm", False)
        api.VM.set_platform.assert_called_once_with("OpaqueRef:vm", DEFAULT_PLATFORM_ARGS)
        api.VM.set_HVM_boot_policy.assert_called_once_with("OpaqueRef:vm", "BIOS order")

        root_record = api.VDI.create.call_args.args[0]
        assert root_record["virtual_size"] == str(20 * 1024**3)
        vbds = [c.args[0] for c in api.VBD.create.call_args_list]
        assert [(v["VDI"], v["type"], v["userdevice"]) for v in vbds] == [
            ("OpaqueRef:root", "Disk", "0"),
            ("OpaqueRef:iso", "CD", "autodetect"),
        ]
        assert api.VIF.create.call_args.args[0]["network"] == "OpaqueRef:net"
        assert create_state.get(StateKey.INSTANCE_UUID) == "vm-uuid"

    def test_failure_removes_partial_instance(self, create_state, api):
        api.VDI.create.side_effect = XenAPI.Failure(["SR_FULL"])
        api.VM.get_power_state.return_value = "Halted"
        api.VM.get_VBDs.return_value = []
        assert StepCreateInstance().run(create_state) is StepAction.ERROR
        api.VM.destroy.assert_called_once_with("OpaqueRef:vm")
        assert "SR_FULL" in str(create_state.error)
        assert StateKey.INSTANCE_UUID not in create_state

    def test_template_missing(self, create_state, session, api):
        session.get_template.side_effect = BuildError("Could not find VM with uuid 'x'")
        assert StepCreateInstance().run(create_state) is StepAction.ERROR
        api.VM.clone.assert_not_called()

    def test_cleanup_destroys_instance(self, create_state, api):
        api.VM.get_power_state.return_value = "Halted"
        api.VM.get_VBDs.return_value = []
        StepCreateInstance().run(create_state)
        create_state.run_cleanups(succeeded=False)
        api.VM.destroy.assert_called_once_with("OpaqueRef:vm")


class TestStepStartVmPaused:
    def test_starts_paused(self, instance_state, api):
        assert StepStartVmPaused().run(instance_state) is StepAction.CONTINUE
        api.VM.start.assert_called_once_with("OpaqueRef:vm", True, False)

    def test_start_failure(self, instance_state, api):
        api.VM.start.side_effect = XenAPI.Failure(["NO_HOSTS_AVAILABLE"])
        assert StepStartVmPaused().run(instance_state) is StepAction.ERROR
        assert "NO_HOSTS_AVAILABLE" in str(instance_state.error)


class TestStepForwardVncPortOverSsh:
    def test_forwards_and_unpauses(self, instance_state, api):
        api.VM.get_domid.return_value = "7"
        client = MagicMock()
        forwarder = MagicMock()
        with patch("xenbuilder.instance.ssh.connect", return_value=client) as mock_connect, patch(
            "xenbuilder.instance.ssh.run_command", return_value=(0, "5901\n", "")
        ) as mock_run, patch("xenbuilder.instance.ssh.PortForwarder", return_value=forwarder) as mock_fwd:
            assert StepForwardVncPortOverSsh().run(instance_state) is StepAction.CONTINUE
        mock_connect.assert_called_once_with("10.0.0.2", 22, "root", password="secret")
        mock_run.assert_called_once_with(client, "xenstore-read /local/domain/7/console/vnc-port")
        mock_fwd.assert_called_once_with(client, 5900, "127.0.0.1", 5901)
        forwarder.start.assert_called_once_with()
        assert instance_state.get(StateKey.LOCAL_VNC_PORT) == 5900
        api.VM.unpause.assert_called_once_with("OpaqueRef:vm")

        instance_state.run_cleanups(succeeded=True)
        forwarder.stop.assert_called_once_with()
        client.close.assert_called_once_with()

    def test_busy_local_port_skipped(self, instance_state, api):
        forwarder = MagicMock()
        forwarder.start.side_effect = [OSError("in use"), None]
        with patch("xenbuilder.instance.ssh.connect"), patch(
            "xenbuilder.instance.ssh.run_command", return_value=(0, "5901", "")
        ), patch("xenbuilder.instance.ssh.PortForwarder", return_value=forwarder):
            assert StepForwardVncPortOverSsh().run(instance_state) is StepAction.CONTINUE
        assert instance_state.get(StateKey.LOCAL_VNC_PORT) == 5901

    def test_xenstore_read_failure(self, instance_state, api):
        with patch("xenbuilder.instance.ssh.connect"), patch(
            "xenbuilder.instance.ssh.run_command", return_value=(1, "", "no such key")
        ):
            assert StepForwardVncPortOverSsh().run(instance_state) is StepAction.ERROR
        assert "no such key" in str(instance_state.error)
        api.VM.unpause.assert_not_called()

    def test_dom0_unreachable(self, instance_state, api):
        with patch("xenbuilder.instance.ssh.connect", side_effect=paramiko.AuthenticationException("denied")):
            assert StepForwardVncPortOverSsh().run(instance_state) is StepAction.ERROR
        assert "dom0" in str(instance_state.error)


class TestStepShutdownAndExport:
    def _export_response(self, chunks):
        response = MagicMock()
        response.iter_content.return_value = chunks
        context = MagicMock()
        context.__enter__.return_value = response
        return context

    def test_exports_xva(self, instance_state, api, tmp_path):
        (tmp_path / "output").mkdir()
        api.VM.get_power_state.return_value = "Halted"
        with patch("xenbuilder.instance.requests.get", return_value=self._export_response([b"xva-", b"data"])) as get:
            assert StepShutdownAndExport().run(instance_state) is StepAction.CONTINUE
        api.VM.clean_shutdown.assert_called_once_with("OpaqueRef:vm")
        assert get.call_args.args[0] == "https://10.0.0.2/export"
        assert get.call_args.kwargs["params"] == {"uuid": "vm-uuid", "session_id": "OpaqueRef:session"}
        assert (tmp_path / "output" / "golden.xva").read_bytes() == b"xva-data"

    def test_waits_for_halt(self, instance_state, api, tmp_path):
        (tmp_path / "output").mkdir()
        api.VM.get_power_state.side_effect = ["Running", "Running", "Halted"]
        step = StepShutdownAndExport()
        step.interval = 0
        with patch("xenbuilder.instance.requests.get", return_value=self._export_response([b"x"])):
            assert step.run(instance_state) is StepAction.CONTINUE
        assert api.VM.get_power_state.call_count == 3

    def test_clean_shutdown_failure_forces_off(self, instance_state, api, tmp_path):
        (tmp_path / "output").mkdir()
        api.VM.clean_shutdown.side_effect = XenAPI.Failure(["VM_MISSING_PV_DRIVERS"])
        api.VM.get_power_state.return_value = "Halted"
        with patch("xenbuilder.instance.requests.get", return_value=self._export_response([b"x"])):
            assert StepShutdownAndExport().run(instance_state) is StepAction.CONTINUE
        api.VM.hard_shutdown.assert_called_once_with("OpaqueRef:vm")

    def test_export_failure(self, instance_state, api, tmp_path):
        (tmp_path / "output").mkdir()
        api.VM.get_power_state.return_value = "Halted"
        with patch("xenbuilder.instance.requests.get", side_effect=requests.ConnectionError("reset")):
            assert StepShutdownAndExport().run(instance_state) is StepAction.ERROR
        assert "Error exporting instance" in str(instance_state.error)

    def test_cancel_while_waiting_for_halt(self, instance_state, api):
        api.VM.get_power_state.return_value = "Running"
        instance_state.cancel_token.cancel()
        assert StepShutdownAndExport().run(instance_state) is StepAction.HALT
