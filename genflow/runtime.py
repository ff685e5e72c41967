import asyncio
import logging
import os
from http import HTTPStatus
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qsl

from .accounts import AccountStore
from .config import Settings
from .gateway import Response, TelemetryGateway
from .logbuffer import LogBuffer
from .rules import default_stats_rules_yaml, load_stats_rules
from .supervisor import JobSupervisor


logger = logging.getLogger("genflow.http")

MAX_HEADER_BYTES = 64 * 1024
MAX_BODY_BYTES = 1024 * 1024


class BadRequest(Exception):
    pass


def _parse_head(data: bytes) -> Tuple[str, str, Dict[str, str], Dict[str, str]]:
    lines = data.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) < 2 or not parts[0]:
        raise BadRequest("malformed request line")
    method, raw_path = parts[0], parts[1]
    path, _, query = raw_path.partition("?")
    headers: Dict[str, str] = {}
    for ln in lines[1:]:
        if not ln:
            continue
        k, sep, v = ln.partition(":")
        if not sep:
            raise BadRequest("malformed header")
        headers[k.strip().lower()] = v.strip()
    return method.upper(), path, dict(parse_qsl(query)), headers


class HttpServer:
    """One request per connection; `/status` is answered here, the rest by the gateway."""

    def __init__(self, host: str, port: int, gateway: TelemetryGateway, supervisor: JobSupervisor):
        self.host = host
        self.port = port
        self.gateway = gateway
        self.supervisor = supervisor
        self.server = None

    async def _read_request(self, reader: asyncio.StreamReader):
        try:
            head = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError:
            raise BadRequest("incomplete request")
        except asyncio.LimitOverrunError:
            raise BadRequest("headers too large")
        method, path, qs, headers = _parse_head(head[:-4])
        body = b""
        try:
            length = int(headers.get("content-length", "0"))
        except ValueError:
            raise BadRequest("bad content-length")
        if length < 0 or length > MAX_BODY_BYTES:
            raise BadRequest("bad content-length")
        if length:
            try:
                body = await reader.readexactly(length)
            except asyncio.IncompleteReadError:
                raise BadRequest("incomplete body")
        return method, path, qs, body

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            try:
                method, path, qs, body = await self._read_request(reader)
            except BadRequest as e:
                resp = Response(400, {"error": str(e)})
            else:
                if path.rstrip("/") == "/status":
                    resp = Response(200, self.supervisor.status())
                else:
                    resp = await self.gateway.handle(method, qs, body)
                logger.debug(f"{method} {path} -> {resp.status}")
            writer.write(self._encode(resp))
            await writer.drain()
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError):
                pass

    @staticmethod
    def _encode(resp: Response) -> bytes:
        body = resp.body()
        try:
            reason = HTTPStatus(resp.status).phrase
        except ValueError:
            reason = "Unknown"
        head = f"HTTP/1.1 {resp.status} {reason}\r\n"
        for k, v in resp.headers.items():
            head += f"{k}: {v}\r\n"
        head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
        return head.encode() + body

    async def start(self):
        self.server = await asyncio.start_server(
            self.handle, self.host, self.port, limit=MAX_HEADER_BYTES
        )

    async def close(self):
        if self.server:
            self.server.close()
            await self.server.wait_closed()


def build_supervisor(settings: Settings) -> JobSupervisor:
    rules = None
    if settings.state_dir:
        rules_path = Path(settings.state_dir) / "rules.yaml"
        if not rules_path.exists():
            rules_path.write_text(default_stats_rules_yaml(), encoding="utf-8")
        rules = load_stats_rules(rules_path)
    return JobSupervisor(
        worker_script=settings.worker_script,
        python=settings.python,
        worker_cwd=settings.worker_cwd,
        rules=rules,
        logs=LogBuffer(settings.log_high_water, settings.log_low_water),
    )


def build_gateway(settings: Settings, supervisor: JobSupervisor) -> TelemetryGateway:
    return TelemetryGateway(
        supervisor,
        accounts=AccountStore(Path(settings.accounts_dir)),
        log_limit=settings.log_limit,
        accounts_limit=settings.accounts_limit,
    )


def daemonize():
    """Simple UNIX double-fork daemonization."""
    if os.name != "posix":
        return
    try:
        pid = os.fork()
        if pid > 0:
            os._exit(0)
    except OSError:
        return
    os.setsid()
    try:
        pid = os.fork()
        if pid > 0:
            os._exit(0)
    except OSError:
        return
    os.umask(0)
    os.chdir("/")


async def run_server(settings: Settings, ready: Optional[asyncio.Event] = None):
    supervisor = build_supervisor(settings)
    gateway = build_gateway(settings, supervisor)
    srv = HttpServer(settings.host, settings.port, gateway, supervisor)
    await srv.start()
    port = srv.server.sockets[0].getsockname()[1]
    print(f"Generator API on http://{settings.host}:{port}/ (worker: {settings.worker_script}). Press Ctrl-C to stop.")
    if ready is not None:
        ready.set()
    try:
        while True:
            await asyncio.sleep(3600)
    except (asyncio.CancelledError, KeyboardInterrupt):
        await supervisor.shutdown()
        await srv.close()
        print("Server stopped.")
