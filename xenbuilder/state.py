"""Shared build state handed to every pipeline step."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from xenbuilder.constants import CANCEL_POLL_INTERVAL
from xenbuilder.utils import log


class StateKey(str, enum.Enum):
    CACHE = "cache"
    SESSION = "session"
    CONFIG = "config"
    UI = "ui"
    CANCEL = "cancel"
    ERROR = "error"
    PROVISIONERS = "provisioners"
    ISO_PATH = "iso_path"
    HTTP_PORT = "http_port"
    ISO_VDI_UUID = "iso_vdi_uuid"
    INSTANCE_UUID = "instance_uuid"
    LOCAL_VNC_PORT = "local_vnc_port"
    INSTANCE_IP = "instance_ip"
    COMMUNICATOR = "communicator"


class CancelToken:
    """Cooperative cancellation flag shared by the runner and its steps.

    Steps that block must wait through :meth:`wait` (or poll
    :attr:`cancelled` at least every few seconds) so a cancellation
    request unwinds them promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as cancellation is requested."""
        if seconds <= 0:
            return self.cancelled
        return self._event.wait(timeout=seconds)

    def poll(self) -> bool:
        """Short cancellable pause used inside polling loops."""
        return self.wait(CANCEL_POLL_INTERVAL)


@dataclass
class _Cleanup:
    label: str
    callback: Callable[[], Any]
    always: bool


class BuildState:
    """Typed context for one build: values are addressed by StateKey only."""

    def __init__(self, values: Optional[Dict[StateKey, Any]] = None) -> None:
        self._values: Dict[StateKey, Any] = {}
        self._cleanups: List[_Cleanup] = []
        for key, value in (values or {}).items():
            self.put(key, value)

    @staticmethod
    def _check_key(key: Any) -> StateKey:
        if not isinstance(key, StateKey):
            raise TypeError(f"Build state keys must be StateKey members, got {key!r}")
        return key

    def put(self, key: StateKey, value: Any) -> None:
        self._values[self._check_key(key)] = value

    def get(self, key: StateKey, default: Any = None) -> Any:
        return self._values.get(self._check_key(key), default)

    def get_ok(self, key: StateKey) -> Tuple[Any, bool]:
        key = self._check_key(key)
        if key in self._values:
            return self._values[key], True
        return None, False

    def require(self, key: StateKey) -> Any:
        value, ok = self.get_ok(key)
        if not ok:
            raise KeyError(f"Build state has no value for {key.value}")
        return value

    def remove(self, key: StateKey) -> None:
        self._values.pop(self._check_key(key), None)

    def __contains__(self, key: Any) -> bool:
        return isinstance(key, StateKey) and key in self._values

    # Frequently used slots
    @property
    def config(self):
        return self.require(StateKey.CONFIG)

    @property
    def session(self):
        return self.require(StateKey.SESSION)

    @property
    def ui(self):
        return self.require(StateKey.UI)

    @property
    def cancel_token(self) -> CancelToken:
        token = self.get(StateKey.CANCEL)
        if token is None:
            token = CancelToken()
            self.put(StateKey.CANCEL, token)
        return token

    @property
    def error(self) -> Optional[BaseException]:
        return self.get(StateKey.ERROR)

    def add_cleanup(self, label: str, callback: Callable[[], Any], always: bool = False) -> None:
        """Register teardown for a resource a step allocated.

        Non-``always`` entries run only when the build did not succeed.
        """
        self._cleanups.append(_Cleanup(label=label, callback=callback, always=always))

    def run_cleanups(self, succeeded: bool) -> None:
        while self._cleanups:
            entry = self._cleanups.pop()
            if succeeded and not entry.always:
                continue
            log("DEBUG", f"Cleanup: {entry.label}")
            try:
                entry.callback()
            except Exception as exc:
                log("WARN", f"Cleanup '{entry.label}' failed: {exc}")
