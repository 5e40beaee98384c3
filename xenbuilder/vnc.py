"""Minimal RFB (VNC) client for typing boot commands."""

from __future__ import annotations

import re
import socket
import struct
import time
from dataclasses import dataclass
from typing import List, Union

from xenbuilder.exceptions import BuildError
from xenbuilder.utils import log, parse_duration

KEY_SHIFT = 0xFFE1

SPECIAL_KEYS = {
    "bs": 0xFF08,
    "del": 0xFFFF,
    "enter": 0xFF0D,
    "return": 0xFF0D,
    "esc": 0xFF1B,
    "tab": 0xFF09,
    "spacebar": 0x0020,
    "insert": 0xFF63,
    "home": 0xFF50,
    "end": 0xFF57,
    "pageup": 0xFF55,
    "pagedown": 0xFF56,
    "left": 0xFF51,
    "up": 0xFF52,
    "right": 0xFF53,
    "down": 0xFF54,
    "leftalt": 0xFFE9,
    "leftctrl": 0xFFE3,
    "leftshift": 0xFFE1,
    "rightalt": 0xFFEA,
    "rightctrl": 0xFFE4,
    "rightshift": 0xFFE2,
}
SPECIAL_KEYS.update({f"f{n}": 0xFFBE + n - 1 for n in range(1, 13)})

SHIFTED_CHARS = set('~!@#$%^&*()_+{}|:"<>?')

_TOKEN_RE = re.compile(r"<([A-Za-z0-9.]+)>")


class VNCError(BuildError):
    """Raised when the RFB handshake or transport fails."""


@dataclass(frozen=True)
class KeyPress:
    keysym: int
    shift: bool = False


@dataclass(frozen=True)
class Wait:
    seconds: float


BootAction = Union[KeyPress, Wait]


def _char_keysym(char: str) -> KeyPress:
    if char == "\n":
        return KeyPress(SPECIAL_KEYS["enter"])
    code = ord(char)
    keysym = code if code < 0x100 else 0x01000000 + code
    return KeyPress(keysym, shift=char.isupper() or char in SHIFTED_CHARS)


def _wait_seconds(suffix: str) -> float:
    if not suffix:
        return 1.0
    if suffix.isdigit():
        return float(suffix)
    return parse_duration(suffix).total_seconds()


def parse_boot_command(text: str) -> List[BootAction]:
    """Turn a rendered boot command into key presses and waits.

    ``<name>`` selects a special key, ``<wait>`` pauses one second and
    ``<waitN>``/``<wait1m>`` pause for a number of seconds or a duration.
    Anything else is typed literally.
    """
    actions: List[BootAction] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match:
            name = match.group(1).lower()
            if name in SPECIAL_KEYS:
                actions.append(KeyPress(SPECIAL_KEYS[name]))
                pos = match.end()
                continue
            if name.startswith("wait"):
                try:
                    actions.append(Wait(_wait_seconds(name[4:])))
                except ValueError:
                    pass
                else:
                    pos = match.end()
                    continue
        actions.append(_char_keysym(text[pos]))
        pos += 1
    return actions


class VNCClient:
    """RFB 3.3/3.7/3.8 client that only sends key events."""

    def __init__(self, sock: socket.socket, key_interval: float = 0.1) -> None:
        self.sock = sock
        self.key_interval = key_interval
        self.desktop_name = ""

    @classmethod
    def connect(cls, host: str, port: int, timeout: float = 10.0, key_interval: float = 0.1) -> "VNCClient":
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise VNCError(f"Could not connect to VNC at {host}:{port}: {exc}") from exc
        client = cls(sock, key_interval=key_interval)
        try:
            client.handshake()
        except (OSError, struct.error) as exc:
            client.close()
            raise VNCError(f"VNC handshake with {host}:{port} failed: {exc}") from exc
        except VNCError:
            client.close()
            raise
        return client

    def _recv_exact(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                raise VNCError("VNC server closed the connection")
            data += chunk
        return data

    def _read_reason(self) -> str:
        (length,) = struct.unpack("!I", self._recv_exact(4))
        return self._recv_exact(length).decode("utf-8", errors="replace")

    def handshake(self) -> None:
        banner = self._recv_exact(12)
        match = re.match(rb"RFB (\d{3})\.(\d{3})\n", banner)
        if not match:
            raise VNCError(f"Unexpected VNC banner: {banner!r}")
        version = (int(match.group(1)), int(match.group(2)))
        if version >= (3, 7):
            minor = 8 if version >= (3, 8) else 7
            self.sock.sendall(f"RFB 003.00{minor}\n".encode("ascii"))
            (count,) = struct.unpack("!B", self._recv_exact(1))
            if count == 0:
                raise VNCError(f"VNC server refused connection: {self._read_reason()}")
            types = self._recv_exact(count)
            if 1 not in types:
                raise VNCError(f"VNC server offers no supported security type: {list(types)}")
            self.sock.sendall(b"\x01")
            if minor == 8:
                (result,) = struct.unpack("!I", self._recv_exact(4))
                if result != 0:
                    raise VNCError(f"VNC security handshake failed: {self._read_reason()}")
        else:
            self.sock.sendall(b"RFB 003.003\n")
            (security,) = struct.unpack("!I", self._recv_exact(4))
            if security == 0:
                raise VNCError(f"VNC server refused connection: {self._read_reason()}")
            if security != 1:
                raise VNCError(f"Unsupported VNC security type: {security}")

        # ClientInit with the shared flag set
        self.sock.sendall(b"\x01")
        self._recv_exact(20)
        (name_length,) = struct.unpack("!I", self._recv_exact(4))
        self.desktop_name = self._recv_exact(name_length).decode("utf-8", errors="replace")
        log("DEBUG", f"Connected to VNC desktop '{self.desktop_name}'")

    def key_event(self, keysym: int, down: bool) -> None:
        self.sock.sendall(struct.pack("!BBxxI", 4, 1 if down else 0, keysym))

    def press(self, key: KeyPress) -> None:
        if key.shift:
            self.key_event(KEY_SHIFT, True)
        self.key_event(key.keysym, True)
        self.key_event(key.keysym, False)
        if key.shift:
            self.key_event(KEY_SHIFT, False)
        if self.key_interval > 0:
            time.sleep(self.key_interval)

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass
