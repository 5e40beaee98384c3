"""Build configuration loading, validation and normalization for xenbuilder."""

from __future__ import annotations

import time
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError

from xenbuilder.constants import (
    BUILDER_TYPE,
    CHECKSUM_NONE,
    CHECKSUM_TYPES,
    DEFAULT_BOOT_WAIT,
    DEFAULT_BUILD_NAME,
    DEFAULT_HTTP_PORT_MAX,
    DEFAULT_HTTP_PORT_MIN,
    DEFAULT_PLATFORM_ARGS,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_WAIT_TIMEOUT,
    DEFAULT_VNC_PORT_MAX,
    DEFAULT_VNC_PORT_MIN,
    TEMPLATE_FIELDS,
)
from xenbuilder.exceptions import BuildError
from xenbuilder.models import BuilderConfig
from xenbuilder.ssh import load_signer
from xenbuilder.utils import downloadable_url, parse_duration, parse_size_to_bytes

STRING_KEYS = (
    "username",
    "password",
    "host_ip",
    "iso_url",
    "iso_checksum",
    "iso_checksum_type",
    "iso_uuid",
    "instance_name",
    "root_disk_size",
    "clone_template",
    "sr_uuid",
    "network_uuid",
    "http_directory",
    "local_ip",
    "boot_wait",
    "ssh_username",
    "ssh_password",
    "ssh_key_path",
    "ssh_wait_timeout",
    "output_directory",
    "build_name",
)
LIST_KEYS = ("iso_urls", "boot_command")
PORT_KEYS = {
    "vnc_port_min": DEFAULT_VNC_PORT_MIN,
    "vnc_port_max": DEFAULT_VNC_PORT_MAX,
    "http_port_min": DEFAULT_HTTP_PORT_MIN,
    "http_port_max": DEFAULT_HTTP_PORT_MAX,
    "ssh_port": DEFAULT_SSH_PORT,
}
KNOWN_KEYS = frozenset(STRING_KEYS + LIST_KEYS + tuple(PORT_KEYS) + ("platform_args",))

# Required identity/target fields and the message reported when one is missing.
REQUIRED_FIELDS = (
    ("username", "A username for the xenserver host must be specified."),
    ("password", "A password for the xenserver host must be specified."),
    ("host_ip", "An ip for the xenserver host must be specified."),
    ("instance_name", "An instance name must be specified."),
    ("root_disk_size", "A root disk size must be specified."),
    ("clone_template", "A template to clone from must be specified."),
    ("iso_uuid", "A uuid for the installation iso must be specified."),
    ("sr_uuid", "A uuid for the sr used for the instance must be specified."),
    ("network_uuid", "A uuid for the network used for the instance must be specified."),
    ("local_ip", "A local IP visible to XenServer's management interface is required to serve files."),
)

TEMPLATE_ENV = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)


class ErrorCollector:
    """Append-only list of validation messages passed through every check."""

    def __init__(self) -> None:
        self._errors: List[str] = []

    def add(self, message: str) -> None:
        self._errors.append(message)

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    def __len__(self) -> int:
        return len(self._errors)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._errors))


def render_template(text: str, variables: Mapping[str, Any]) -> str:
    if "{{" not in text and "{%" not in text:
        return text
    return TEMPLATE_ENV.from_string(text).render(dict(variables))


def check_template(text: str) -> None:
    """Parse a template without rendering it, raising TemplateError on bad syntax."""
    TEMPLATE_ENV.parse(text)


def build_variables(
    build_name: str,
    user_variables: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "build_name": build_name,
        "builder_type": BUILDER_TYPE,
        "timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "user": dict(user_variables or {}),
    }


def _merge_overlays(raws: Tuple[Any, ...], errors: ErrorCollector) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for index, raw in enumerate(raws):
        if raw is None:
            continue
        if not isinstance(raw, Mapping):
            errors.add(f"Configuration overlay {index} must be a mapping, got {type(raw).__name__}")
            continue
        for key, value in raw.items():
            merged[str(key)] = value
    return merged


def _string_value(merged: Mapping[str, Any], key: str, errors: ErrorCollector) -> str:
    value = merged.get(key)
    if value is None:
        return ""
    if isinstance(value, bool):
        errors.add(f"{key} must be a string (got '{value}')")
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        errors.add(f"{key} must be a string (got {type(value).__name__})")
        return ""
    return value


def _string_list(merged: Mapping[str, Any], key: str, errors: ErrorCollector) -> List[str]:
    value = merged.get(key)
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        errors.add(f"{key} must be a list of strings")
        return []
    items: List[str] = []
    for index, item in enumerate(value):
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            errors.add(f"{key}[{index}] must be a string")
            continue
        items.append(str(item))
    return items


def _port_value(merged: Mapping[str, Any], key: str, default: int, errors: ErrorCollector) -> int:
    raw = merged.get(key)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        errors.add(f"{key} must be an integer (got '{raw}')")
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        errors.add(f"{key} must be an integer (got '{raw}')")
        return default
    if value == 0:
        return default
    if not 1 <= value <= 65535:
        errors.add(f"{key} must be between 1 and 65535 (got {value})")
    return value


def _platform_args(merged: Mapping[str, Any], errors: ErrorCollector) -> Dict[str, str]:
    raw = merged.get("platform_args")
    # Caller-supplied args replace the defaults wholesale; no partial merge.
    if not raw:
        return dict(DEFAULT_PLATFORM_ARGS)
    if not isinstance(raw, Mapping):
        errors.add("platform_args must be a mapping of names to values")
        return dict(DEFAULT_PLATFORM_ARGS)
    args: Dict[str, str] = {}
    for name, value in raw.items():
        if isinstance(value, bool):
            args[str(name)] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            args[str(name)] = str(value)
        else:
            errors.add(f"platform_args.{name} must be a string, number or boolean")
    return args


def _duration(raw: str, key: str, errors: ErrorCollector) -> timedelta:
    try:
        return parse_duration(raw)
    except ValueError as exc:
        errors.add(f"Failed to parse {key}: {exc}")
        return timedelta(0)


def validate(*raws: Any, variables: Optional[Mapping[str, Any]] = None) -> Tuple[BuilderConfig, List[str]]:
    """Merge raw overlays into a BuilderConfig and collect every defect found.

    Later overlays override earlier ones. The returned config is always the
    best-effort normalization; it is only usable when the error list is empty.

    ``variables`` overrides the build variables. Without a ``timestamp`` entry
    the current time is used, so callers that need repeatable results (as
    :meth:`Builder.prepare` does) must pin it.
    """
    errors = ErrorCollector()
    merged = _merge_overlays(raws, errors)

    for key in sorted(set(merged) - KNOWN_KEYS):
        errors.add(f"Unknown configuration key: '{key}'")

    values = {key: _string_value(merged, key, errors) for key in STRING_KEYS}
    iso_urls = _string_list(merged, "iso_urls", errors)
    boot_command = _string_list(merged, "boot_command", errors)
    ports = {key: _port_value(merged, key, default, errors) for key, default in PORT_KEYS.items()}

    build_name = values["build_name"] or DEFAULT_BUILD_NAME
    if not values["boot_wait"]:
        values["boot_wait"] = DEFAULT_BOOT_WAIT
    if not values["ssh_wait_timeout"]:
        values["ssh_wait_timeout"] = DEFAULT_SSH_WAIT_TIMEOUT
    if not values["output_directory"]:
        values["output_directory"] = f"output-{build_name}"

    context = build_variables(build_name)
    if variables:
        context.update(variables)
    for name in TEMPLATE_FIELDS:
        try:
            values[name] = render_template(values[name], context)
        except TemplateError as exc:
            errors.add(f"Error processing {name}: {exc}")

    boot_wait = _duration(values["boot_wait"], "boot_wait", errors)
    ssh_wait_timeout = _duration(values["ssh_wait_timeout"], "ssh_wait_timeout", errors)

    for index, command in enumerate(boot_command):
        try:
            check_template(command)
        except TemplateError as exc:
            errors.add(f"Error processing boot_command[{index}]: {exc}")

    if not values["ssh_username"].strip():
        errors.add("An ssh_username must be specified.")

    ssh_password = values["ssh_password"]
    ssh_key_path = values["ssh_key_path"]
    if ssh_password and ssh_key_path:
        errors.add("Only one of ssh_password or ssh_key_path may be specified.")
    elif not ssh_password and not ssh_key_path:
        errors.add("One of ssh_password or ssh_key_path must be specified.")
    if ssh_key_path:
        key_path = Path(ssh_key_path).expanduser()
        if not key_path.exists():
            errors.add(f"ssh_key_path is invalid: {key_path} does not exist")
        else:
            try:
                load_signer(key_path)
            except BuildError as exc:
                errors.add(f"ssh_key_path is invalid: {exc}")

    for key, message in REQUIRED_FIELDS:
        if not values[key].strip():
            errors.add(message)

    if values["root_disk_size"].strip():
        try:
            parse_size_to_bytes(values["root_disk_size"])
        except BuildError as exc:
            errors.add(f"root_disk_size is invalid: {exc}")

    platform_args = _platform_args(merged, errors)

    if ports["http_port_min"] > ports["http_port_max"]:
        errors.add("the HTTP min port must be less than the max")
    if ports["vnc_port_min"] > ports["vnc_port_max"]:
        errors.add("the VNC min port must be less than the max")

    checksum = values["iso_checksum"]
    checksum_type = values["iso_checksum_type"].strip().lower()
    if not checksum_type:
        errors.add("The iso_checksum_type must be specified.")
    elif checksum_type != CHECKSUM_NONE:
        if not checksum.strip():
            errors.add("Due to the file size being large, an iso_checksum is required.")
        else:
            checksum = checksum.strip().lower()
        if checksum_type not in CHECKSUM_TYPES:
            errors.add(f"Unsupported checksum type: {checksum_type}")

    # A single iso_url replaces whatever iso_urls held.
    if values["iso_url"]:
        iso_urls = [values["iso_url"]]
    if not iso_urls:
        errors.add("An iso_url or iso_urls must be specified.")
    normalized_urls: List[str] = []
    for index, url in enumerate(iso_urls):
        try:
            normalized_urls.append(downloadable_url(url))
        except ValueError as exc:
            errors.add(f"Failed to parse iso_urls[{index}]: {exc}")
            normalized_urls.append(url)

    config = BuilderConfig(
        username=values["username"],
        password=values["password"],
        host_ip=values["host_ip"],
        iso_urls=tuple(normalized_urls),
        iso_checksum=checksum,
        iso_checksum_type=checksum_type,
        iso_uuid=values["iso_uuid"],
        instance_name=values["instance_name"],
        root_disk_size=values["root_disk_size"],
        clone_template=values["clone_template"],
        sr_uuid=values["sr_uuid"],
        network_uuid=values["network_uuid"],
        platform_args=MappingProxyType(platform_args),
        boot_command=tuple(boot_command),
        boot_wait=boot_wait,
        vnc_port_min=ports["vnc_port_min"],
        vnc_port_max=ports["vnc_port_max"],
        http_directory=values["http_directory"],
        http_port_min=ports["http_port_min"],
        http_port_max=ports["http_port_max"],
        local_ip=values["local_ip"],
        ssh_username=values["ssh_username"],
        ssh_password=ssh_password,
        ssh_key_path=ssh_key_path,
        ssh_wait_timeout=ssh_wait_timeout,
        output_directory=values["output_directory"],
        build_name=build_name,
        ssh_port=ports["ssh_port"],
        raw_boot_wait=values["boot_wait"],
        raw_ssh_wait_timeout=values["ssh_wait_timeout"],
    )
    return config, errors.errors


def load_template(path: Path) -> Dict[str, Any]:
    """Read a YAML build template with ``builder``, ``variables`` and ``provisioners`` sections."""
    if not path.exists():
        raise BuildError(f"Build template missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise BuildError(f"Build template {path} contains invalid YAML: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BuildError(f"Build template {path} must contain a YAML mapping")
    unknown = sorted(set(data) - {"builder", "variables", "provisioners"})
    if unknown:
        raise BuildError(f"Unknown template section(s) in {path}: {', '.join(unknown)}")
    builder = data.get("builder") or {}
    variables = data.get("variables") or {}
    provisioners = data.get("provisioners") or []
    if not isinstance(builder, dict):
        raise BuildError("Template section 'builder' must be a mapping")
    if not isinstance(variables, dict):
        raise BuildError("Template section 'variables' must be a mapping")
    if not isinstance(provisioners, list):
        raise BuildError("Template section 'provisioners' must be a list")
    return {"builder": builder, "variables": variables, "provisioners": provisioners}
