"""Shared fixtures: in-process fake nodes for both transports."""
import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from nimiq_rpc.config import ClientConfig
from nimiq_rpc.http_client import HttpClient

NODE_URL = "http://node.test/"
WS_URL = "ws://node.test/ws"


class FakeHttpNode:
    """Node answering JSON-RPC 2.0 POST requests, served by FastAPI."""

    def __init__(self):
        self.methods: Dict[str, Callable[[List[Any]], Awaitable[Any]]] = {}
        self.requests: List[Dict[str, Any]] = []
        self.app = FastAPI()
        self.app.post("/")(self.handle)

    def register_method(self, method_name: str, handler: Callable[[List[Any]], Awaitable[Any]]):
        """Register a handler returning the reply body (minus jsonrpc/id) or a Response."""
        self.methods[method_name] = handler

    async def handle(self, request: Request):
        body = await request.json()
        self.requests.append({
            "body": body,
            "headers": dict(request.headers),
            "query": dict(request.query_params),
        })
        handler = self.methods.get(body["method"])
        if handler is None:
            return JSONResponse({
                "jsonrpc": "2.0",
                "id": body["id"],
                "error": {"code": -32601, "message": "Method not found"},
            })
        reply = await handler(body["params"])
        if isinstance(reply, Response):
            return reply
        return JSONResponse({"jsonrpc": "2.0", "id": body["id"], **reply})

    def client(self, **config: Any) -> HttpClient:
        config.setdefault("url", NODE_URL)
        return HttpClient(ClientConfig(**config), transport=httpx.ASGITransport(app=self.app))


_EOF = object()


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, node: "FakeWsNode", url: str):
        self.node = node
        self.url = url
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str):
        if self.closed:
            raise OSError("socket is closed")
        frame = json.loads(text)
        self.sent.append(frame)
        self.node.on_frame(self, frame)

    def push(self, frame: Any):
        self._inbox.put_nowait(json.dumps(frame))

    def push_raw(self, text: str):
        self._inbox.put_nowait(text)

    def drop(self):
        """Simulate the server going away."""
        self.closed = True
        self._inbox.put_nowait(_EOF)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(_EOF)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _EOF:
            raise StopAsyncIteration
        return item


class FakeWsNode:
    """Node accepting subscription connections through an injected connector."""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.connect_attempts: List[float] = []
        self.refuse = False
        self.refuse_count = 0
        self.auto_reply = True
        self.next_subscription_id = 100
        self.handshakes: List[Dict[str, Any]] = []

    async def connect(self, url: str) -> FakeSocket:
        self.connect_attempts.append(time.monotonic())
        if self.refuse or self.refuse_count > 0:
            self.refuse_count = max(0, self.refuse_count - 1)
            raise OSError("Connection refused")
        socket = FakeSocket(self, url)
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]

    def on_frame(self, socket: FakeSocket, frame: Dict[str, Any]):
        self.handshakes.append(frame)
        if self.auto_reply:
            socket.push({"jsonrpc": "2.0", "id": frame["id"], "result": self.assign_id()})

    def assign_id(self) -> int:
        subscription_id = self.next_subscription_id
        self.next_subscription_id += 1
        return subscription_id

    def notify(
        self,
        subscription_id: int,
        data: Any,
        metadata: Optional[Any] = None,
        method: str = "subscribeForHeadBlock",
        socket: Optional[FakeSocket] = None,
    ):
        result: Dict[str, Any] = {"data": data}
        if metadata is not None:
            result["metadata"] = metadata
        (socket or self.socket).push({
            "jsonrpc": "2.0",
            "method": method,
            "params": {"subscription": subscription_id, "result": result},
        })


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    """Poll predicate until it holds, failing the test after timeout seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def http_node():
    """Create a fake HTTP node."""
    return FakeHttpNode()


@pytest.fixture
def ws_node():
    """Create a fake WebSocket node."""
    return FakeWsNode()
