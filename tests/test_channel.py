import socket
import threading

import pytest

from raftkv.channel import RpcChannel
from raftkv.controller import RpcController
from raftkv.messages import GetArgs, GetReply
from raftkv.wire import WireError, encode_varint, split_request


def framed(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeServer:
    def __init__(self, respond):
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.port = self.listener.getsockname()[1]
        self.requests = []
        self.respond = respond
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        conn, _ = self.listener.accept()
        with conn:
            buffer = b""
            while True:
                chunk = conn.recv(65536)
                if not chunk:
                    return
                buffer += chunk
                try:
                    header, args = split_request(buffer)
                except WireError:
                    continue
                buffer = b""
                self.requests.append((header, args))
                reply = self.respond(header, args)
                if reply is None:
                    return
                conn.sendall(reply)

    def close(self):
        self.listener.close()


@pytest.fixture
def echo_server():
    def respond(header, args):
        request = GetArgs.parse(args)
        return framed(GetReply(err="OK", value=request.key).serialize())

    server = FakeServer(respond)
    yield server
    server.close()


def test_call_returns_parsed_response(echo_server):
    channel = RpcChannel("127.0.0.1", echo_server.port, True)
    controller = RpcController()
    request = GetArgs(key="alpha", client_id="c", request_id=1)
    reply = channel.call_method("kvServerRpc", "Get", controller, request, GetReply)
    channel.close()
    assert not controller.failed
    assert reply == GetReply(err="OK", value="alpha")
    header, args = echo_server.requests[0]
    assert header.service_name == "kvServerRpc"
    assert header.method_name == "Get"
    assert header.args_size == len(args)
    assert GetArgs.parse(args) == request


def test_connection_is_reused(echo_server):
    channel = RpcChannel("127.0.0.1", echo_server.port, True)
    first = channel.call_method("kvServerRpc", "Get", RpcController(), GetArgs(key="a"), GetReply)
    second = channel.call_method("kvServerRpc", "Get", RpcController(), GetArgs(key="b"), GetReply)
    channel.close()
    assert [first.value, second.value] == ["a", "b"]
    assert len(echo_server.requests) == 2


def test_lazy_connection(echo_server):
    channel = RpcChannel("127.0.0.1", echo_server.port, False)
    reply = channel.call_method("kvServerRpc", "Get", RpcController(), GetArgs(key="lazy"), GetReply)
    channel.close()
    assert reply.value == "lazy"


def test_peer_closing_without_reply_fails():
    server = FakeServer(lambda header, args: None)
    try:
        channel = RpcChannel("127.0.0.1", server.port, True)
        controller = RpcController()
        reply = channel.call_method("s", "m", controller, GetArgs(key="k"), GetReply)
        channel.close()
    finally:
        server.close()
    assert reply is None
    assert controller.failed
    assert "closed" in controller.error_text


def test_unparsable_response_fails():
    server = FakeServer(lambda header, args: framed(b"\x0a\xff"))
    try:
        channel = RpcChannel("127.0.0.1", server.port, True)
        controller = RpcController()
        reply = channel.call_method("s", "m", controller, GetArgs(key="k"), GetReply)
        channel.close()
    finally:
        server.close()
    assert reply is None
    assert controller.failed
    assert controller.error_text.startswith("parse error!")


def test_refused_connection_fails():
    port = free_port()
    channel = RpcChannel("127.0.0.1", port, True)
    controller = RpcController()
    reply = channel.call_method("s", "m", controller, GetArgs(key="k"), GetReply)
    assert reply is None
    assert controller.failed
    assert controller.error_text.startswith("connect fail!")


def test_unserializable_request_fails(echo_server):
    channel = RpcChannel("127.0.0.1", echo_server.port, True)
    controller = RpcController()
    reply = channel.call_method("s", "m", controller, GetArgs(request_id=1 << 40), GetReply)
    channel.close()
    assert reply is None
    assert controller.error_text == "serialize request error!"