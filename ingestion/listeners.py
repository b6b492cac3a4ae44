"""
Network listeners feeding the ingestion engine.

UDP and TCP listeners are socketserver servers running serve_forever() in a
daemon thread. The Fluent Bit HTTP listener is a small FastAPI app served by
its own uvicorn server thread. Each listener hands raw payloads to a
callback: handler(protocol, transport, data, source_ip, listener=name, **extra).
"""

import json
import logging
import re
import socket
import socketserver
import threading
import time
from typing import Callable, Iterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

Handler = Callable[..., object]

READ_SIZE = 65536
FRAME_DELIMITERS = re.compile(rb"[\x00\n]")


# ==================== FRAMING ====================

def syslog_frames(rfile, max_size: int = 1048576) -> Iterator[bytes]:
    """
    Split a syslog TCP stream into messages.

    Supports RFC 6587 octet counting ("<len> <msg>") and newline framing,
    detected per message.
    """
    while True:
        first = rfile.read(1)
        if not first:
            return
        if first in b"\r\n\x00 ":
            continue

        if first.isdigit():
            digits = first
            while True:
                c = rfile.read(1)
                if not c:
                    return
                if c == b" " and len(digits) <= 10:
                    length = int(digits)
                    frame = rfile.read(length)
                    if len(frame) < length:
                        return
                    yield frame
                    break
                if not c.isdigit():
                    # Not octet counting after all; treat as a newline-framed line
                    line = digits + c + (b"" if c == b"\n" else rfile.readline(max_size))
                    yield line.rstrip(b"\r\n")
                    break
                digits += c
        else:
            yield (first + rfile.readline(max_size)).rstrip(b"\r\n")


def delimited_frames(rfile, delimiters=FRAME_DELIMITERS) -> Iterator[bytes]:
    """Split a stream on NUL or newline, skipping empty frames"""
    buffer = b""
    while True:
        data = rfile.read1(READ_SIZE)
        if not data:
            break
        buffer += data
        parts = delimiters.split(buffer)
        buffer = parts.pop()
        for part in parts:
            if part.strip():
                yield part.rstrip(b"\r")
    if buffer.strip():
        yield buffer.rstrip(b"\r")


# ==================== SOCKET SERVERS ====================

class _UDPServer(socketserver.ThreadingUDPServer):
    allow_reuse_address = True
    daemon_threads = True
    max_packet_size = 65535


class _TCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False


class _DatagramHandler(socketserver.BaseRequestHandler):
    def handle(self):
        data, _sock = self.request
        self.server.listener.dispatch(data, self.client_address[0])


class _StreamHandler(socketserver.StreamRequestHandler):
    def setup(self):
        super().setup()
        self.server.listener.connection_opened()

    def handle(self):
        listener = self.server.listener
        source_ip = self.client_address[0]
        try:
            for frame in listener.frames(self.rfile):
                listener.dispatch(frame, source_ip)
        except (ConnectionError, OSError) as e:
            logger.debug(f"{listener.name}: connection from {source_ip} closed: {e}")

    def finish(self):
        try:
            super().finish()
        finally:
            self.server.listener.connection_closed()


# ==================== LISTENERS ====================

class Listener:
    """Base listener: lifecycle, status and connection accounting"""

    def __init__(self, name: str, protocol: str, transport: str, host: str, port: int,
                 handler: Handler, max_message_size: int = 1048576):
        self.name = name
        self.protocol = protocol
        self.transport = transport
        self.host = host
        self.configured_port = port
        self.handler = handler
        self.max_message_size = max_message_size
        self.status = "stopped"
        self.error: Optional[str] = None
        self.bound_port: Optional[int] = None
        self.active_connections = 0
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self.bound_port or self.configured_port

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def dispatch(self, data: bytes, source_ip: str, **extra):
        try:
            self.handler(self.protocol, self.transport, data, source_ip, listener=self.name, **extra)
        except Exception as e:
            logger.error(f"{self.name}: handler error: {type(e).__name__}: {e}")

    def connection_opened(self):
        with self._lock:
            self.active_connections += 1

    def connection_closed(self):
        with self._lock:
            self.active_connections = max(self.active_connections - 1, 0)

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__}(name='{self.name}', port={self.port}, status='{self.status}')>"


class SocketListener(Listener):
    """UDP or TCP listener backed by a socketserver server"""

    def __init__(self, *args, framing: str = "line", **kwargs):
        super().__init__(*args, **kwargs)
        self.framing = framing
        self._server: Optional[socketserver.BaseServer] = None

    def frames(self, rfile) -> Iterator[bytes]:
        if self.framing == "syslog":
            return syslog_frames(rfile, self.max_message_size)
        return delimited_frames(rfile)

    def start(self):
        if self.is_running:
            return
        if self.transport == "udp":
            server = _UDPServer((self.host, self.configured_port), _DatagramHandler)
        else:
            server = _TCPServer((self.host, self.configured_port), _StreamHandler)
        server.listener = self
        self._server = server
        self.bound_port = server.server_address[1]

        self._thread = threading.Thread(target=server.serve_forever, name=f"listener-{self.name}", daemon=True)
        self._thread.start()
        self.status = "running"
        self.error = None
        logger.info(f"{self.name} listening on {self.host}:{self.bound_port}/{self.transport}")

    def stop(self):
        if self._server is None:
            self.status = "stopped"
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        self.status = "stopped"
        logger.info(f"{self.name} stopped")


def create_fluent_app(listener: "FluentHTTPListener") -> FastAPI:
    """Fluent Bit 'http' output target: POST JSON to /<tag>"""
    app = FastAPI(title="LogDeck Fluent Receiver", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{tag:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def receive(tag: str, request: Request):
        if request.method != "POST":
            return JSONResponse(status_code=405, content={"status": "error", "message": "Method not allowed"})

        body = await request.body()
        if len(body) > listener.max_message_size:
            return JSONResponse(status_code=413, content={"status": "error", "message": "Payload too large"})
        try:
            json.loads(body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(status_code=400, content={"status": "error", "message": "Invalid JSON"})

        source_ip = request.client.host if request.client else "unknown"
        listener.dispatch(body, source_ip, tag=tag.strip("/") or None)
        return {"status": "ok"}

    return app


class FluentHTTPListener(Listener):
    """HTTP listener for Fluent Bit, served by uvicorn on a pre-bound socket"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._server: Optional[uvicorn.Server] = None
        self._socket: Optional[socket.socket] = None

    def start(self):
        if self.is_running:
            return
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.configured_port))
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self.bound_port = sock.getsockname()[1]

        config = uvicorn.Config(
            create_fluent_app(self),
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name=f"listener-{self.name}",
            daemon=True,
        )
        self._thread.start()
        self.status = "running"
        self.error = None
        logger.info(f"{self.name} listening on {self.host}:{self.bound_port}/http")

    def wait_started(self, timeout: float = 5.0) -> bool:
        """Block until uvicorn accepts connections (tests)"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._server is not None and self._server.started:
                return True
            time.sleep(0.05)
        return False

    def stop(self):
        if self._server is not None:
            self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=5)
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._socket = None
        self._thread = None
        self.status = "stopped"
        logger.info(f"{self.name} stopped")


def build_listener(name: str, spec: dict, host: str, handler: Handler, max_message_size: int) -> Listener:
    """Listener for one entry of the ingestion.listeners config section"""
    protocol = spec["protocol"]
    transport = spec["transport"]
    port = int(spec.get("port", 0))
    args = (name, protocol, transport, spec.get("host", host), port, handler, max_message_size)

    if transport == "http":
        return FluentHTTPListener(*args)
    if transport in ("udp", "tcp"):
        framing = "syslog" if protocol == "syslog" and transport == "tcp" else "line"
        return SocketListener(*args, framing=framing)
    raise ValueError(f"Unsupported transport for {name}: {transport}")


def is_port_in_use(host: str, port: int, transport: str = "tcp") -> bool:
    """True when the port cannot be bound on host"""
    kind = socket.SOCK_DGRAM if transport == "udp" else socket.SOCK_STREAM
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, kind) as s:
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True
