"""Client side of a call: frames the request, sends it and reads the reply.

A reply on the wire is a varint length followed by the encoded response.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import TypeVar

from .controller import RpcController
from .messages import Message
from .wire import RpcHeader, WireError, frame_request, read_varint

_log = logging.getLogger(__name__)

_RECV_BUFFER = 65536
_MAX_VARINT_BYTES = 10
_CONNECT_RETRIES = 3

R = TypeVar("R", bound=Message)


def _recv_response(sock: socket.socket) -> bytes | None:
    """Read one length-prefixed response; ``None`` if the peer closed first."""
    buffer = bytearray()
    while True:
        if buffer:
            try:
                length, offset = read_varint(buffer)
            except WireError:
                if len(buffer) >= _MAX_VARINT_BYTES:
                    raise
            else:
                if len(buffer) >= offset + length:
                    return bytes(buffer[offset:offset + length])
        chunk = sock.recv(_RECV_BUFFER)
        if not chunk:
            return None
        buffer += chunk


class RpcChannel:
    """A persistent connection to one remote node that reconnects on failure."""

    def __init__(self, ip: str, port: int, connect_now: bool = True) -> None:
        self.ip = ip
        self.port = port
        self.timeout: float | None = None
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        if not connect_now:
            return
        error = self._connect()
        tries = _CONNECT_RETRIES
        while error and tries:
            _log.warning("%s", error)
            error = self._connect()
            tries -= 1

    def _connect(self) -> str | None:
        """Open a connection; return an error message on failure."""
        try:
            sock = socket.create_connection((self.ip, self.port), timeout=self.timeout)
        except OSError as exc:
            self._sock = None
            return f"connect fail! {exc}"
        sock.settimeout(self.timeout)
        self._sock = sock
        return None

    def _drop(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def call_method(
        self,
        service_name: str,
        method_name: str,
        controller: RpcController,
        request: Message,
        response_type: type[R],
    ) -> R | None:
        """Call ``service_name.method_name``.

        Returns the decoded response, or ``None`` after recording the reason
        for the failure in ``controller``.
        """
        with self._lock:
            if self._sock is None:
                error = self._connect()
                if error:
                    _log.debug("reconnect to %s:%s failed", self.ip, self.port)
                    controller.set_failed(error)
                    return None
            try:
                args = request.serialize()
            except ValueError:
                controller.set_failed("serialize request error!")
                return None
            frame = frame_request(RpcHeader(service_name, method_name, len(args)), args)

            while True:
                try:
                    self._sock.sendall(frame)
                    break
                except OSError as exc:
                    _log.warning("send error (%s), reconnecting to %s:%s", exc, self.ip, self.port)
                    self._drop()
                    error = self._connect()
                    if error:
                        controller.set_failed(error)
                        return None

            try:
                data = _recv_response(self._sock)
            except OSError as exc:
                self._drop()
                controller.set_failed(f"recv error! {exc}")
                return None
            except WireError as exc:
                self._drop()
                controller.set_failed(f"parse error! {exc}")
                return None
            if data is None:
                self._drop()
                controller.set_failed("recv error! connection closed")
                return None
            try:
                return response_type.parse(data)
            except WireError:
                controller.set_failed(f"parse error! response_str:{data!r}")
                return None

    def close(self) -> None:
        """Close the connection; the next call reconnects."""
        with self._lock:
            self._drop()