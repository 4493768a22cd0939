"""Server side of calls: registers services and dispatches framed requests.

Each request is a frame built by :func:`raftkv.wire.frame_request`; each
reply is a varint length followed by the encoded response.
"""

from __future__ import annotations

import logging
import os
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Any, Callable

from .messages import Message
from .wire import RpcHeader, WireError, encode_varint, read_varint, split_request

_log = logging.getLogger(__name__)

_RECV_BUFFER = 65536
_MAX_VARINT_BYTES = 10


@dataclass(frozen=True)
class RpcMethod:
    """One callable method of a named service."""

    service: str
    name: str
    request_type: type[Message]
    response_type: type[Message]
    handler: Callable[[Any], Message]


def _take_frame(buffer: bytearray) -> bytes | None:
    """Remove and return one complete request frame, or ``None`` if incomplete.

    Raises ``WireError`` if the buffered bytes cannot start a valid frame.
    """
    try:
        header_size, offset = read_varint(buffer)
    except WireError:
        if len(buffer) >= _MAX_VARINT_BYTES:
            raise
        return None
    header_end = offset + (header_size & 0xFFFFFFFF)
    if len(buffer) < header_end:
        return None
    header = RpcHeader.parse(bytes(buffer[offset:header_end]))
    total = header_end + header.args_size
    if len(buffer) < total:
        return None
    frame = bytes(buffer[:total])
    del buffer[:total]
    return frame


def _local_ip() -> str:
    addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    return addresses[-1]


class _Handler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        provider: RpcProvider = self.server.provider  # type: ignore[attr-defined]
        buffer = bytearray()
        while True:
            chunk = self.request.recv(_RECV_BUFFER)
            if not chunk:
                return
            buffer += chunk
            while True:
                try:
                    frame = _take_frame(buffer)
                except WireError as exc:
                    _log.warning("corrupt request stream: %s", exc)
                    return
                if frame is None:
                    break
                reply = provider.handle_message(frame)
                if reply is not None:
                    self.request.sendall(encode_varint(len(reply)) + reply)


class _Server(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class RpcProvider:
    """Publishes services over TCP and runs their methods for remote callers."""

    def __init__(self) -> None:
        self._services: dict[str, dict[str, RpcMethod]] = {}
        self._server: _Server | None = None
        self.address: tuple[str, int] | None = None
        self.ready = threading.Event()

    def notify_service(self, service: Any) -> None:
        """Register every method that ``service.rpc_methods()`` lists.

        A service name that is already registered keeps its first methods.
        """
        grouped: dict[str, dict[str, RpcMethod]] = {}
        for method in service.rpc_methods():
            grouped.setdefault(method.service, {}).setdefault(method.name, method)
        for name, methods in grouped.items():
            _log.info("service_name:%s", name)
            self._services.setdefault(name, methods)

    def handle_message(self, data: bytes) -> bytes | None:
        """Run the call in one request frame; return the encoded response.

        Returns ``None`` when the frame is malformed or names an unknown
        service or method.
        """
        try:
            header, args = split_request(data)
        except WireError as exc:
            _log.warning("rpc header parse error: %s", exc)
            return None
        methods = self._services.get(header.service_name)
        if methods is None:
            _log.warning(
                "service %s is not exist! known services: %s",
                header.service_name,
                " ".join(self._services),
            )
            return None
        method = methods.get(header.method_name)
        if method is None:
            _log.warning("%s:%s is not exist!", header.service_name, header.method_name)
            return None
        try:
            request = method.request_type.parse(args)
        except WireError:
            _log.warning("request parse error, content:%r", args)
            return None
        response = method.handler(request)
        try:
            return response.serialize()
        except ValueError:
            _log.warning("serialize response error!")
            return None

    def run(
        self,
        node_index: int,
        port: int,
        host: str | None = None,
        config_path: str | os.PathLike[str] = "test.conf",
    ) -> None:
        """Record this node's address in ``config_path`` and serve until stopped."""
        ip = host or _local_ip()
        node = f"node{node_index}"
        with open(config_path, "a", encoding="utf-8") as out:
            out.write(f"{node}ip={ip}\n")
            out.write(f"{node}port={port}\n")
        server = _Server((ip, port), _Handler)
        server.provider = self  # type: ignore[attr-defined]
        self._server = server
        self.address = server.server_address[:2]
        _log.info("RpcProvider start service at ip:%s port:%s", ip, port)
        self.ready.set()
        try:
            server.serve_forever()
        finally:
            server.server_close()

    def stop(self) -> None:
        """Stop a running :meth:`run` from another thread."""
        server = self._server
        if server is not None:
            server.shutdown()
            self._server = None
            self.ready.clear()