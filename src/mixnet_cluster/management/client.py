"""Client for a provider's line-oriented management socket.

Requests are single text lines; responses are SMTP-style status lines
(``250 OK``, with ``250-...`` continuation lines for multi-line replies).
"""

import socket
from pathlib import Path
from typing import List, Optional, Tuple, Union

from mixnet_cluster.errors import ProvisioningFailure
from mixnet_cluster.utils import get_logger

logger = get_logger("management")

STATUS_SERVICE_READY = 220
STATUS_SERVICE_CLOSING = 221
STATUS_OK = 250
STATUS_UNKNOWN_COMMAND = 500
STATUS_SYNTAX_ERROR = 501
STATUS_TRANSACTION_FAILED = 554

CMD_ADD_USER = "ADD_USER"
CMD_SET_USER_IDENTITY = "SET_USER_IDENTITY"
CMD_QUIT = "QUIT"


class ProviderUnavailable(ProvisioningFailure):
    """The management socket could not be reached; safe to retry."""


class ManagementClient:
    def __init__(self, socket_path: Union[str, Path], timeout: float = 5.0) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._file = None

    def __enter__(self) -> "ManagementClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
        except OSError as exc:
            sock.close()
            raise ProviderUnavailable(f"Cannot connect to {self.socket_path}: {exc}") from exc
        self._sock = sock
        self._file = sock.makefile("rwb")

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                logger.debug("Error closing management stream", exc_info=True)
            self._file = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def read_response(self, expect: int, command: Optional[str] = None) -> Tuple[int, str]:
        """Read one (possibly multi-line) response and require status ``expect``."""
        if self._file is None:
            raise ProvisioningFailure("Not connected", command=command)
        lines: List[str] = []
        while True:
            try:
                raw = self._file.readline()
            except OSError as exc:
                raise ProvisioningFailure(f"Read failed: {exc}", command=command) from exc
            if not raw:
                raise ProvisioningFailure("Connection closed by provider", command=command)
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if len(line) < 3 or not line[:3].isdigit() or (len(line) > 3 and line[3] not in " -"):
                raise ProvisioningFailure(f"Malformed response line {line!r}", command=command)
            code = int(line[:3])
            lines.append(line[4:])
            if len(line) > 3 and line[3] == "-":
                continue
            break
        message = "\n".join(lines)
        if code != expect:
            raise ProvisioningFailure(
                f"Expected status {expect}, got {code} {message}".rstrip(),
                command=command,
                code=code,
            )
        return code, message

    def command(self, line: str, expect: int = STATUS_OK) -> Tuple[int, str]:
        if self._file is None:
            raise ProvisioningFailure("Not connected", command=line)
        try:
            self._file.write(line.encode("utf-8") + b"\r\n")
            self._file.flush()
        except OSError as exc:
            raise ProvisioningFailure(f"Write failed: {exc}", command=line) from exc
        return self.read_response(expect, command=line)


def provision_user(
    socket_path: Union[str, Path],
    username: str,
    public_key: bytes,
    timeout: float = 5.0,
) -> None:
    """
    Add ``username`` to a running provider and bind its identity key.

    Nothing is rolled back on failure: if SET_USER_IDENTITY is rejected the
    user stays added. Retrying the whole sequence is the caller's call.
    """
    if not username or any(ch.isspace() for ch in username):
        raise ValueError(f"Invalid username {username!r}")
    key_text = public_key.hex()
    logger.info(f"Attempting to add user: {username} via {socket_path}")
    with ManagementClient(socket_path, timeout=timeout) as client:
        client.read_response(STATUS_SERVICE_READY, command="<connect>")
        for line in (
            f"{CMD_ADD_USER} {username} {key_text}",
            f"{CMD_SET_USER_IDENTITY} {username} {key_text}",
            CMD_QUIT,
        ):
            client.command(line, STATUS_OK)
    logger.info(f"Provisioned user {username}")
