"""Global constants and path configuration for xenbuilder."""

from __future__ import annotations

import os
import re
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

CACHE_DIR = Path(os.environ.get("XENBUILDER_CACHE_DIR", "xenbuilder_cache"))

BUILDER_TYPE = "xenserver"
DEFAULT_BUILD_NAME = "xenserver"

DEFAULT_VNC_PORT_MIN = 5900
DEFAULT_VNC_PORT_MAX = 6000
DEFAULT_HTTP_PORT_MIN = 8000
DEFAULT_HTTP_PORT_MAX = 9000
DEFAULT_SSH_PORT = 22
DEFAULT_BOOT_WAIT = "5s"
DEFAULT_SSH_WAIT_TIMEOUT = "200m"

# Applied only when the caller supplies no platform args at all.
DEFAULT_PLATFORM_ARGS = {
    "viridian": "false",
    "nx": "true",
    "pae": "true",
    "apic": "true",
    "timeoffset": "0",
    "acpi": "1",
}

CHECKSUM_TYPES = {"md5", "sha1", "sha256", "sha512"}
CHECKSUM_NONE = "none"

DOWNLOADABLE_SCHEMES = {"http", "https", "ftp", "file"}

# String fields rendered through the template engine during validation.
TEMPLATE_FIELDS = (
    "username",
    "password",
    "host_ip",
    "iso_url",
    "instance_name",
    "root_disk_size",
    "clone_template",
    "iso_uuid",
    "sr_uuid",
    "network_uuid",
    "boot_wait",
    "iso_checksum",
    "iso_checksum_type",
    "http_directory",
    "local_ip",
    "ssh_wait_timeout",
    "ssh_username",
    "ssh_password",
    "ssh_key_path",
    "output_directory",
)

DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

DISK_SIZE_RE = re.compile(r"^(\d+)([KMGTkmgt]?)$")

_SENSITIVE_FIELDS = {"password", "ssh_password"}

NULL_REF = "OpaqueRef:NULL"

# Poll interval for cancellable waits inside steps.
CANCEL_POLL_INTERVAL = 0.5
