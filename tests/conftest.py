"""Shared fixtures: short temp dirs and an in-process provider management socket."""

from __future__ import annotations

import shutil
import socket
import tempfile
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest


@pytest.fixture
def short_dir() -> Generator[Path, None, None]:
    """Temp dir with a short path; unix socket paths are limited to ~100 bytes."""
    path = Path(tempfile.mkdtemp(prefix="mc", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


class FakeProviderSocket:
    """
    Minimal management-socket server speaking the provider's line protocol.

    ``fail_on`` names a command that is answered with 554 instead of 250.
    """

    def __init__(self, path: Path, fail_on: Optional[str] = None, multiline: bool = False) -> None:
        self.path = Path(path)
        self.fail_on = fail_on
        self.multiline = multiline
        self.users: Dict[str, str] = {}
        self.identities: Dict[str, str] = {}
        self.commands: List[str] = []
        self._lock = threading.Lock()
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(str(self.path))
        self._sock.listen(4)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            with conn:
                try:
                    self._handle(conn)
                except OSError:
                    continue

    def _reply(self, stream, text: str) -> None:
        stream.write(text.encode() + b"\r\n")
        stream.flush()

    def _handle(self, conn: socket.socket) -> None:
        stream = conn.makefile("rwb")
        self._reply(stream, "220 Service ready")
        for raw in stream:
            parts = raw.decode().strip().split()
            if not parts:
                continue
            cmd, args = parts[0], parts[1:]
            with self._lock:
                self.commands.append(cmd)
            if cmd == self.fail_on:
                self._reply(stream, "554 Transaction failed")
            elif cmd == "ADD_USER" and len(args) == 2:
                with self._lock:
                    if args[0] in self.users:
                        self._reply(stream, "554 User exists")
                        continue
                    self.users[args[0]] = args[1]
                if self.multiline:
                    self._reply(stream, "250-User added")
                self._reply(stream, "250 OK")
            elif cmd == "SET_USER_IDENTITY" and len(args) == 2:
                with self._lock:
                    if args[0] not in self.users:
                        self._reply(stream, "554 No such user")
                        continue
                    self.identities[args[0]] = args[1]
                self._reply(stream, "250 OK")
            elif cmd == "QUIT":
                self._reply(stream, "250 Bye")
                break
            else:
                self._reply(stream, "500 Unknown command")
        stream.close()

    def close(self) -> None:
        # shutdown() wakes the blocked accept(); close() alone does not on Linux.
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        self._thread.join(timeout=2)


@pytest.fixture
def fake_provider_socket() -> Generator[Callable[..., FakeProviderSocket], None, None]:
    servers: List[FakeProviderSocket] = []

    def start(path: Path, fail_on: Optional[str] = None, multiline: bool = False) -> FakeProviderSocket:
        server = FakeProviderSocket(path, fail_on=fail_on, multiline=multiline)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()
