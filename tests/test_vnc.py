"""Tests for xenbuilder.vnc module."""

from __future__ import annotations

import struct
from unittest.mock import patch

import pytest

from xenbuilder.vnc import KEY_SHIFT, SPECIAL_KEYS, KeyPress, VNCClient, VNCError, Wait, parse_boot_command


class FakeSocket:
    """In-memory socket: serves canned bytes and records what the client sends."""

    def __init__(self, incoming: bytes) -> None:
        self.incoming = bytearray(incoming)
        self.sent = bytearray()
        self.closed = False

    def recv(self, size: int) -> bytes:
        chunk = bytes(self.incoming[:size])
        del self.incoming[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        self.sent += data

    def close(self) -> None:
        self.closed = True


def _server_init(name: bytes = b"golden") -> bytes:
    return b"\x00" * 20 + struct.pack("!I", len(name)) + name


class TestParseBootCommand:
    def test_plain_text(self):
        assert parse_boot_command("ab") == [KeyPress(ord("a")), KeyPress(ord("b"))]

    def test_uppercase_and_symbols_use_shift(self):
        assert parse_boot_command("A!") == [KeyPress(ord("A"), shift=True), KeyPress(ord("!"), shift=True)]

    def test_special_keys_case_insensitive(self):
        assert parse_boot_command("<esc><Enter><f1><spacebar>") == [
            KeyPress(SPECIAL_KEYS["esc"]),
            KeyPress(SPECIAL_KEYS["enter"]),
            KeyPress(0xFFBE),
            KeyPress(0x20),
        ]

    def test_waits(self):
        assert parse_boot_command("<wait><wait5><wait10><wait1m>") == [
            Wait(1.0),
            Wait(5.0),
            Wait(10.0),
            Wait(60.0),
        ]

    def test_unknown_tag_typed_literally(self):
        actions = parse_boot_command("<foo>")
        assert len(actions) == 5
        assert actions[0] == KeyPress(ord("<"), shift=True)
        assert actions[1] == KeyPress(ord("f"))

    def test_newline_is_enter(self):
        assert parse_boot_command("\n") == [KeyPress(SPECIAL_KEYS["enter"])]


class TestHandshake:
    def test_rfb_38(self):
        sock = FakeSocket(b"RFB 003.008\n" + b"\x01\x01" + struct.pack("!I", 0) + _server_init())
        client = VNCClient(sock)
        client.handshake()
        assert bytes(sock.sent) == b"RFB 003.008\n" + b"\x01" + b"\x01"
        assert client.desktop_name == "golden"

    def test_rfb_33(self):
        sock = FakeSocket(b"RFB 003.003\n" + struct.pack("!I", 1) + _server_init())
        client = VNCClient(sock)
        client.handshake()
        assert bytes(sock.sent) == b"RFB 003.003\n" + b"\x01"

    def test_rfb_37_has_no_security_result(self):
        sock = FakeSocket(b"RFB 003.007\n" + b"\x02\x02\x01" + _server_init())
        client = VNCClient(sock)
        client.handshake()
        assert bytes(sock.sent) == b"RFB 003.007\n" + b"\x01" + b"\x01"

    def test_refused_connection(self):
        reason = b"too many clients"
        sock = FakeSocket(b"RFB 003.008\n" + b"\x00" + struct.pack("!I", len(reason)) + reason)
        with pytest.raises(VNCError, match="too many clients"):
            VNCClient(sock).handshake()

    def test_password_only_server_rejected(self):
        sock = FakeSocket(b"RFB 003.008\n" + b"\x01\x02")
        with pytest.raises(VNCError, match="no supported security type"):
            VNCClient(sock).handshake()

    def test_bad_banner(self):
        with pytest.raises(VNCError, match="Unexpected VNC banner"):
            VNCClient(FakeSocket(b"HTTP/1.1 400")).handshake()

    def test_server_hangs_up(self):
        with pytest.raises(VNCError, match="closed the connection"):
            VNCClient(FakeSocket(b"RFB 003.0")).handshake()

    def test_connect_failure_wrapped(self):
        with patch("xenbuilder.vnc.socket.create_connection", side_effect=ConnectionRefusedError("refused")):
            with pytest.raises(VNCError, match="Could not connect to VNC"):
                VNCClient.connect("127.0.0.1", 5900)

    def test_connect_closes_on_handshake_failure(self):
        sock = FakeSocket(b"garbage-bytes")
        with patch("xenbuilder.vnc.socket.create_connection", return_value=sock):
            with pytest.raises(VNCError):
                VNCClient.connect("127.0.0.1", 5900)
        assert sock.closed


class TestKeyEvents:
    def test_press_sends_down_and_up(self):
        sock = FakeSocket(b"")
        VNCClient(sock, key_interval=0).press(KeyPress(ord("a")))
        assert bytes(sock.sent) == struct.pack("!BBxxI", 4, 1, ord("a")) + struct.pack("!BBxxI", 4, 0, ord("a"))

    def test_press_with_shift(self):
        sock = FakeSocket(b"")
        VNCClient(sock, key_interval=0).press(KeyPress(ord("A"), shift=True))
        events = [struct.unpack("!BBxxI", bytes(sock.sent[i : i + 8])) for i in range(0, len(sock.sent), 8)]
        assert events == [(4, 1, KEY_SHIFT), (4, 1, ord("A")), (4, 0, ord("A")), (4, 0, KEY_SHIFT)]
