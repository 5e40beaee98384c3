"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from xenbuilder.config import validate
from xenbuilder.models import BuilderConfig
from xenbuilder.state import BuildState, CancelToken, StateKey


@pytest.fixture
def iso_file(tmp_path):
    """A small local file standing in for the install media."""
    path = tmp_path / "install.iso"
    path.write_bytes(b"xenbuilder-test-iso")
    return path


@pytest.fixture
def raw_config(tmp_path, iso_file) -> dict:
    """A minimal raw configuration that validates without errors."""
    return {
        "username": "root",
        "password": "secret",
        "host_ip": "10.0.0.2",
        "iso_url": str(iso_file),
        "iso_checksum_type": "none",
        "iso_uuid": "iso-uuid",
        "instance_name": "golden",
        "root_disk_size": "20G",
        "clone_template": "Other install media",
        "sr_uuid": "sr-uuid",
        "network_uuid": "net-uuid",
        "local_ip": "10.0.0.10",
        "ssh_username": "root",
        "ssh_password": "guest-secret",
        "output_directory": str(tmp_path / "output"),
    }


@pytest.fixture
def builder_config(raw_config) -> BuilderConfig:
    cfg, errors = validate(raw_config)
    assert errors == []
    return cfg


@pytest.fixture
def ui():
    return MagicMock()


@pytest.fixture
def session():
    """A stand-in control-plane session; ``session.api`` is the XAPI dispatcher."""
    mock = MagicMock()
    mock.base_url = "https://10.0.0.2"
    mock.handle = "OpaqueRef:session"
    return mock


@pytest.fixture
def build_state(builder_config, ui, session) -> BuildState:
    return BuildState(
        {
            StateKey.CONFIG: builder_config,
            StateKey.UI: ui,
            StateKey.SESSION: session,
            StateKey.CANCEL: CancelToken(),
        }
    )
