"""XAPI control-plane session for xenbuilder."""

from __future__ import annotations

import xmlrpc.client
from typing import Any, List, Optional

import XenAPI  # type: ignore

from xenbuilder.exceptions import AuthenticationError, BuildError
from xenbuilder.utils import log

ORIGINATOR = "xenbuilder"


class ControlPlaneSession:
    """One authenticated XAPI session, owned by a single build."""

    def __init__(self, host_ip: str, username: str, password: str) -> None:
        self.host_ip = host_ip
        self.username = username
        self.password = password
        self.base_url = f"https://{host_ip}"
        self._session: Optional[Any] = None

    def login(self) -> "ControlPlaneSession":
        session = XenAPI.Session(self.base_url, ignore_ssl=True)
        try:
            session.xenapi.login_with_password(self.username, self.password, "1.0", ORIGINATOR)
        except XenAPI.Failure as exc:
            raise AuthenticationError(f"XAPI login to {self.host_ip} rejected: {exc.details}") from exc
        except (OSError, xmlrpc.client.Error) as exc:
            raise AuthenticationError(f"Could not reach XAPI at {self.base_url}: {exc}") from exc
        self._session = session
        log("DEBUG", f"XAPI session opened on {self.host_ip} as {self.username}")
        return self

    def logout(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        try:
            session.xenapi.logout()
        except Exception as exc:
            log("DEBUG", f"XAPI logout failed: {exc}")

    @property
    def api(self) -> Any:
        if self._session is None:
            raise BuildError("XAPI session is not logged in")
        return self._session.xenapi

    @property
    def handle(self) -> str:
        """Session reference used to authorize HTTP transfers."""
        if self._session is None:
            raise BuildError("XAPI session is not logged in")
        return self._session.handle

    def get_hosts(self) -> List[str]:
        hosts = self.api.host.get_all()
        log("DEBUG", f"XAPI reports {len(hosts)} host(s)")
        return hosts

    def _by_uuid(self, kind: str, uuid: str) -> str:
        try:
            return getattr(self.api, kind).get_by_uuid(uuid)
        except XenAPI.Failure as exc:
            raise BuildError(f"Could not find {kind} with uuid '{uuid}': {exc.details}") from exc

    def get_vm(self, uuid: str) -> str:
        return self._by_uuid("VM", uuid)

    def get_sr(self, uuid: str) -> str:
        return self._by_uuid("SR", uuid)

    def get_network(self, uuid: str) -> str:
        return self._by_uuid("network", uuid)

    def get_vdi(self, uuid: str) -> str:
        return self._by_uuid("VDI", uuid)

    def find_vdi(self, uuid: str) -> Optional[str]:
        try:
            return self.api.VDI.get_by_uuid(uuid)
        except XenAPI.Failure:
            return None

    def get_template(self, name_or_uuid: str) -> str:
        """Resolve a template by name label, falling back to uuid."""
        matches = self.api.VM.get_by_name_label(name_or_uuid)
        if len(matches) > 1:
            raise BuildError(f"Template name '{name_or_uuid}' is ambiguous ({len(matches)} matches)")
        if matches:
            return matches[0]
        return self.get_vm(name_or_uuid)
