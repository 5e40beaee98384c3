"""Data models for xenbuilder."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Tuple


@dataclass(frozen=True)
class BuilderConfig:
    # Control plane
    username: str
    password: str
    host_ip: str
    # Source media
    iso_urls: Tuple[str, ...]
    iso_checksum: str
    iso_checksum_type: str
    iso_uuid: str
    # Target instance
    instance_name: str
    root_disk_size: str
    clone_template: str
    sr_uuid: str
    network_uuid: str
    # Read-only view, excluded from the hash.
    platform_args: Mapping[str, str] = field(hash=False)
    # Interactive boot
    boot_command: Tuple[str, ...]
    boot_wait: timedelta
    vnc_port_min: int
    vnc_port_max: int
    http_directory: str
    http_port_min: int
    http_port_max: int
    local_ip: str
    # Guest access
    ssh_username: str
    ssh_password: str
    ssh_key_path: str
    ssh_wait_timeout: timedelta
    # Output
    output_directory: str
    build_name: str
    ssh_port: int = 22
    raw_boot_wait: str = "5s"
    raw_ssh_wait_timeout: str = "200m"
