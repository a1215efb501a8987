"""
A minimal client for the Nailgun protocol.

Every message is a chunk: a 4-byte big-endian payload length, a 1-byte
chunk type and the payload. The client sends arguments, environment,
working directory and the command; the server answers with stdout,
stderr and exit chunks, and asks for stdin with start-input chunks.
"""

import logging
import socket
import struct
import threading
from types import TracebackType
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

CHUNK_HEADER = struct.Struct(">Ic")

CHUNK_ARGUMENT = b"A"
CHUNK_ENVIRONMENT = b"E"
CHUNK_WORKING_DIR = b"D"
CHUNK_COMMAND = b"C"
CHUNK_STDIN = b"0"
CHUNK_STDOUT = b"1"
CHUNK_STDERR = b"2"
CHUNK_STDIN_EOF = b"."
CHUNK_EXIT = b"X"
CHUNK_START_INPUT = b"S"
CHUNK_HEARTBEAT = b"H"

STDIN_CHUNK_SIZE = 64 * 1024


class NailgunError(Exception):
    """The server broke protocol or hung up mid-call."""


def encode_chunk(chunk_type: bytes, payload: bytes = b"") -> bytes:
    return CHUNK_HEADER.pack(len(payload), chunk_type) + payload


class NailgunConnection:
    """One Nailgun session. Sessions are single use: one command each."""

    def __init__(
        self,
        host: str,
        port: int,
        heartbeat_interval: float = 0.5,
        connect_timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.heartbeat_interval = heartbeat_interval
        # Connection errors propagate as-is
        self._sock = socket.create_connection((host, port), timeout=connect_timeout)
        self._sock.settimeout(None)
        self._send_lock = threading.Lock()

    def __enter__(self) -> "NailgunConnection":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        exc_traceback: Optional[TracebackType],
    ) -> None:
        self.close()

    def close(self) -> None:
        self._sock.close()

    def send_chunk(self, chunk_type: bytes, payload: bytes = b"") -> None:
        with self._send_lock:
            self._sock.sendall(encode_chunk(chunk_type, payload))

    def _recv_exact(self, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            data = self._sock.recv(size - len(buffer))
            if not data:
                raise NailgunError(
                    f"Nailgun server at {self.host}:{self.port} closed the connection"
                )
            buffer.extend(data)
        return bytes(buffer)

    def read_chunk(self) -> tuple[bytes, bytes]:
        length, chunk_type = CHUNK_HEADER.unpack(self._recv_exact(CHUNK_HEADER.size))
        payload = self._recv_exact(length) if length else b""
        return chunk_type, payload

    def _heartbeat_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.heartbeat_interval):
            try:
                self.send_chunk(CHUNK_HEARTBEAT)
            except OSError:
                return

    def execute(
        self,
        command: str,
        args: Sequence[str],
        cwd: str,
        env: Mapping[str, str],
        stdin_payload: bytes = b"",
    ) -> tuple[int, bytes, bytes]:
        """
        Run `command` on the server and wait for it to exit.

        Returns:
            (exit code, stdout bytes, stderr bytes)

        Raises:
            NailgunError: On a protocol violation or premature hang-up.
            OSError: On socket failures.
        """
        for arg in args:
            self.send_chunk(CHUNK_ARGUMENT, arg.encode("utf-8"))
        for key, value in env.items():
            self.send_chunk(CHUNK_ENVIRONMENT, f"{key}={value}".encode("utf-8"))
        self.send_chunk(CHUNK_WORKING_DIR, cwd.encode("utf-8"))
        self.send_chunk(CHUNK_COMMAND, command.encode("utf-8"))

        stop_heartbeat = threading.Event()
        heartbeat = threading.Thread(
            target=self._heartbeat_loop, args=(stop_heartbeat,), daemon=True
        )
        heartbeat.start()

        stdout = bytearray()
        stderr = bytearray()
        offset = 0
        eof_sent = False
        try:
            while True:
                chunk_type, payload = self.read_chunk()
                if chunk_type == CHUNK_STDOUT:
                    stdout.extend(payload)
                elif chunk_type == CHUNK_STDERR:
                    stderr.extend(payload)
                elif chunk_type == CHUNK_START_INPUT:
                    # The server asks for one chunk of stdin at a time
                    if eof_sent:
                        continue
                    if offset < len(stdin_payload):
                        block = stdin_payload[offset : offset + STDIN_CHUNK_SIZE]
                        self.send_chunk(CHUNK_STDIN, block)
                        offset += len(block)
                    else:
                        self.send_chunk(CHUNK_STDIN_EOF)
                        eof_sent = True
                elif chunk_type == CHUNK_EXIT:
                    text = payload.decode("ascii", errors="replace").strip()
                    try:
                        exit_code = int(text or 0)
                    except ValueError as e:
                        raise NailgunError(f"Malformed exit chunk: {text!r}") from e
                    return exit_code, bytes(stdout), bytes(stderr)
                else:
                    raise NailgunError(f"Unexpected chunk type {chunk_type!r}")
        finally:
            stop_heartbeat.set()
            heartbeat.join()
