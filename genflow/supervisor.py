from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, asdict, field, fields
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from .errors import AlreadyRunningError, InvalidConfigError, WorkerIOError
from .logbuffer import LogBuffer, LogEntry
from .rules import StatsRule, classify, extract


logger = logging.getLogger("genflow.supervisor")

FINISHED_MESSAGE = "Generator process finished"

# asyncio.StreamReader line limit for worker output
LINE_LIMIT = 1024 * 1024


@dataclass
class Stats:
    generated: int = 0
    target: int = 0
    rare: int = 0
    couples: int = 0
    activated: int = 0
    failed: int = 0
    speed: float = 0
    is_running: bool = False

    def reset(self, target: int) -> None:
        self.generated = 0
        self.target = target
        self.rare = 0
        self.couples = 0
        self.activated = 0
        self.failed = 0
        self.speed = 0
        self.is_running = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_int(key: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool):
        raise InvalidConfigError(f"config.{key} must be an integer")
    try:
        out = int(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"config.{key} must be an integer")
    if isinstance(value, float) and value != out:
        raise InvalidConfigError(f"config.{key} must be an integer")
    if out < minimum:
        raise InvalidConfigError(f"config.{key} must be >= {minimum}")
    return out


@dataclass
class JobConfig:
    region: str = ""
    name_prefix: str = "KNX"
    password_prefix: str = "KNX"
    account_count: int = 100
    thread_count: int = 5
    rarity_threshold: int = 4
    auto_activation: bool = False
    turbo_mode: bool = False
    # keys the worker understands but we don't validate
    extra: Dict[str, Any] = field(default_factory=dict)

    _MINIMUMS = {"account_count": 0, "thread_count": 1, "rarity_threshold": 0}

    @classmethod
    def from_dict(cls, data: Any) -> "JobConfig":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise InvalidConfigError("config must be an object")
        known = {f.name: f for f in fields(cls) if f.name != "extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            f = known.get(key)
            if f is None:
                extra[key] = value
            elif value is None:
                continue
            elif key in cls._MINIMUMS:
                kwargs[key] = _as_int(key, value, cls._MINIMUMS[key])
            elif f.type in ("bool", bool):
                if not isinstance(value, bool):
                    raise InvalidConfigError(f"config.{key} must be a boolean")
                kwargs[key] = value
            else:
                if not isinstance(value, str):
                    raise InvalidConfigError(f"config.{key} must be a string")
                kwargs[key] = value
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out = {**self.extra}
        out.update({k: v for k, v in asdict(self).items() if k != "extra"})
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class WorkerEvent:
    kind: str  # "message" | "stderr" | "close"
    line: Optional[str] = None
    returncode: Optional[int] = None
    ts: float = 0.0


class WorkerProcess:
    """One external worker process seen as a stream of line events.

    `events()` yields a "message" per stdout line, a "stderr" per stderr line,
    and exactly one final "close" once both streams hit EOF and the process
    has been reaped.
    """

    def __init__(self, argv: List[str], env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None):
        self.argv = argv
        self.env = env
        self.cwd = cwd
        self.proc: Optional[asyncio.subprocess.Process] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def spawn(self) -> None:
        self.proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
            cwd=self.cwd,
            limit=LINE_LIMIT,
        )

    async def _pump(self, stream: asyncio.StreamReader, kind: str, queue: asyncio.Queue) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError as e:
                    # over-long line; the reader has already discarded it
                    await queue.put(WorkerEvent("stderr", f"Worker output line dropped: {e}", ts=time.time()))
                    continue
                if not raw:
                    break
                line = raw.decode(errors="ignore").rstrip("\r\n")
                await queue.put(WorkerEvent(kind, line, ts=time.time()))
        finally:
            await queue.put(None)

    async def events(self) -> AsyncIterator[WorkerEvent]:
        if self.proc is None:
            raise WorkerIOError("worker was never spawned")
        queue: asyncio.Queue = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump(self.proc.stdout, "message", queue)),
            asyncio.create_task(self._pump(self.proc.stderr, "stderr", queue)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                ev = await queue.get()
                if ev is None:
                    open_streams -= 1
                    continue
                yield ev
            rc = await self.proc.wait()
        finally:
            for t in pumps:
                t.cancel()
        yield WorkerEvent("close", returncode=rc, ts=time.time())

    def kill(self) -> None:
        if self.proc is None or self.proc.returncode is not None:
            return
        try:
            self.proc.terminate()
        except ProcessLookupError:
            pass


WorkerFactory = Callable[[List[str], Dict[str, str], Optional[str]], Any]


class JobSupervisor:
    """Owns the single job handle, its Stats and the shared LogBuffer.

    All mutation happens on the event loop, from the consumer task reading the
    worker's events, so readers never need a lock.
    """

    def __init__(
        self,
        worker_script: str = "V7ACC.py",
        python: Optional[str] = None,
        worker_cwd: Optional[str] = None,
        rules: Optional[List[StatsRule]] = None,
        logs: Optional[LogBuffer] = None,
        env: Optional[Dict[str, str]] = None,
        worker_factory: Optional[WorkerFactory] = None,
    ):
        self.worker_script = worker_script
        self.python = python or sys.executable
        self.worker_cwd = worker_cwd
        self.rules = rules
        self.logs = logs if logs is not None else LogBuffer()
        self.stats = Stats()
        self._env = env
        self._factory = worker_factory or WorkerProcess
        self._worker = None
        self._starting = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def has_job(self) -> bool:
        return self._worker is not None

    def status(self) -> Dict[str, bool]:
        return {"has_job": self.has_job}

    def build_argv(self, config: JobConfig) -> List[str]:
        return [self.python, "-u", self.worker_script, config.to_json()]

    def build_env(self) -> Dict[str, str]:
        base = dict(os.environ) if self._env is None else dict(self._env)
        base["PYTHONUNBUFFERED"] = "1"
        base.setdefault("PYTHONIOENCODING", "utf-8")
        return base

    def _append(self, message: str, category: str) -> None:
        self.logs.append(LogEntry.now(message, category))

    async def start(self, config: JobConfig) -> None:
        if self._worker is not None or self._starting:
            raise AlreadyRunningError("Generator already running")
        # the slot stays reserved while the spawn is awaited
        self._starting = True
        try:
            worker = self._factory(self.build_argv(config), self.build_env(), self.worker_cwd)
            try:
                await worker.spawn()
            except OSError as e:
                self._append(f"Failed to start generator: {e}", "error")
                logger.error(f"Worker spawn failed: {e}")
                raise WorkerIOError(f"Failed to start generator: {e}") from e
        finally:
            self._starting = False
        self.stats.reset(config.account_count)
        self._worker = worker
        logger.info(f"Job started (pid={getattr(worker, 'pid', None)}, target={config.account_count})")
        task = asyncio.create_task(self._consume(worker))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _consume(self, worker) -> None:
        try:
            async for ev in worker.events():
                self.on_event(worker, ev)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Worker stream failed: {e}", exc_info=True)
            self._append(f"Worker stream failed: {e}", "error")
            self.on_event(worker, WorkerEvent("close", ts=time.time()))

    def on_event(self, worker, ev: WorkerEvent) -> None:
        current = worker is self._worker
        if ev.kind == "message":
            logger.debug(f"[worker] {ev.line}")
            self._append(ev.line, classify(ev.line))
            if current:
                extract(ev.line, self.stats, self.rules)
        elif ev.kind == "stderr":
            logger.debug(f"[worker:stderr] {ev.line}")
            self._append(ev.line, "error")
        elif ev.kind == "close":
            logger.info(f"Worker exited (returncode={ev.returncode})")
            if current:
                self._worker = None
                self.stats.is_running = False
            self._append(FINISHED_MESSAGE, "info")

    def stop(self) -> bool:
        """Terminate the running worker, if any. Returns whether one was running."""
        worker = self._worker
        if worker is None:
            return False
        worker.kill()
        self._worker = None
        self.stats.is_running = False
        logger.info("Job stopped")
        return True

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self.stop()
        await self.wait()
