"""Backend lifecycle: discover, launch, health-check and supervise llama-server.

One ``BackendManager`` owns at most one child process. Its state moves
NOT_INITIALIZED -> DISCOVERING -> LAUNCHING -> HEALTHY, may cycle between
HEALTHY and UNHEALTHY when the child crashes, and ends in STOPPED after
``shutdown()``. Every transition is published as a ``BackendEvent``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Callable

from sidekick.config import BackendConfig, ModelConfig
from sidekick.errors import (
    BackendUnhealthyError,
    ExecutableNotFoundError,
    ModelNotFoundError,
)
from sidekick.gpu import resolve_gpu_layers
from sidekick.inference.client import LlamaServerClient
from sidekick.inference.engine import BackendEvent, BackendState, ModelProfile
from sidekick.model_manager import resolve_model_path
from sidekick.platform import resolve_executable

logger = logging.getLogger(__name__)

# Lines of child stdout/stderr kept for diagnostics
OUTPUT_BUFFER_LINES = 200
_TERMINATE_GRACE = 5.0

Listener = Callable[[BackendEvent], None]


class BackendManager:
    """Supervises the local inference server and exposes its readiness."""

    def __init__(
        self,
        config: BackendConfig,
        model_config: ModelConfig,
        profile: ModelProfile,
        client: LlamaServerClient,
    ) -> None:
        self.config = config
        self.model_config = model_config
        self.profile = profile
        self.client = client
        self.model_path: Path | None = None
        self.last_error: str = ""

        self._state = BackendState.NOT_INITIALIZED
        self._process: asyncio.subprocess.Process | None = None
        self._owns_process = False
        self._watcher: asyncio.Task | None = None
        self._pumps: set[asyncio.Task] = set()
        self._output: deque[str] = deque(maxlen=OUTPUT_BUFFER_LINES)
        self._init_task: asyncio.Task | None = None
        self._discovery_failed = False
        self._listeners: list[Listener] = []
        self._subscribers: list[asyncio.Queue[BackendEvent]] = []

    # ─── Observation ────────────────────────────────────────────────────

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def is_healthy(self) -> bool:
        return self._state is BackendState.HEALTHY

    @property
    def owns_process(self) -> bool:
        """False when an already-running server was found and reused."""
        return self._owns_process

    @property
    def initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def can_auto_start(self) -> bool:
        """Whether a background start may be kicked off without user action.

        Discovery failures are reported once and then wait for ``retry()``
        or ``switch_model()``; a crash after a healthy start does not block.
        """
        return (
            not self._discovery_failed
            and not self.initializing
            and self._state in (BackendState.NOT_INITIALIZED, BackendState.UNHEALTHY)
        )

    def diagnostics(self) -> list[str]:
        """Most recent backend output lines, oldest first."""
        return list(self._output)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def events(self) -> AsyncIterator[BackendEvent]:
        """Yield every state transition from now on, until the consumer stops iterating."""
        queue: asyncio.Queue[BackendEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    def _set_state(self, state: BackendState, detail: str = "") -> None:
        previous = self._state
        if state is previous and not detail:
            return
        self._state = state
        logger.debug("Backend state %s -> %s %s", previous.value, state.value, detail)
        event = BackendEvent(state=state, previous=previous, detail=detail)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Backend state listener failed")
        for queue in self._subscribers:
            queue.put_nowait(event)

    # ─── Lifecycle ──────────────────────────────────────────────────────

    async def ensure_ready(self) -> BackendState:
        """Bring the backend up if needed and return the resulting state.

        Concurrent callers share one initialization. After a discovery
        failure this returns immediately without retrying.
        """
        if self._state is BackendState.HEALTHY:
            return self._state
        if self._discovery_failed:
            return self._state
        task = self._init_task
        if task is None or task.done():
            task = self._start_init()
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # shutdown() aborted the initialization; the caller was not cancelled
        return self._state

    def start_background(self) -> bool:
        """Start initialization without waiting for it. Returns False if not allowed now."""
        if not self.can_auto_start:
            return False
        self._start_init()
        return True

    async def retry(self) -> BackendState:
        """Explicit user retry: forget the last discovery failure and try again."""
        self._discovery_failed = False
        self.last_error = ""
        return await self.ensure_ready()

    async def switch_model(self, profile: ModelProfile, model_config: ModelConfig) -> None:
        """Stop the current backend and arm discovery for *model_config*.

        The next ``ensure_ready()`` launches the new model from scratch.
        """
        await self.shutdown()
        self.profile = profile
        self.model_config = model_config
        self.model_path = None
        self._discovery_failed = False
        self.last_error = ""
        self._set_state(BackendState.NOT_INITIALIZED, f"switched to {profile.identifier}")

    def report_failure(self, reason: str) -> None:
        """A caller saw the backend refuse a connection: demote HEALTHY to UNHEALTHY."""
        if self._state is not BackendState.HEALTHY:
            return
        logger.info("Backend marked unhealthy: %s", reason)
        self.last_error = reason
        self._set_state(BackendState.UNHEALTHY, reason)

    async def shutdown(self) -> None:
        """Terminate the owned child process (if any) and go to STOPPED. Idempotent."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        self._init_task = None

        await self._release_process()
        self._set_state(BackendState.STOPPED)

    # ─── Initialization ─────────────────────────────────────────────────

    def _start_init(self) -> asyncio.Task:
        task = asyncio.create_task(self._initialize())
        task.add_done_callback(self._log_task_failure)
        self._init_task = task
        return task

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Backend initialization crashed", exc_info=exc)
            self._fail(exc)

    async def _initialize(self) -> None:
        # A demoted backend may still be running; never leave it behind a new launch
        await self._release_process()
        self._set_state(BackendState.DISCOVERING)

        if await self.client.health():
            logger.info("Reusing backend already running at %s", self.client.base_url)
            self._owns_process = False
            self._set_state(BackendState.HEALTHY, f"existing server at {self.client.base_url}")
            return

        try:
            model_path = resolve_model_path(self.model_config)
            executable = resolve_executable(self.config.executable)
        except (ModelNotFoundError, ExecutableNotFoundError) as e:
            self._fail(e)
            return

        self._set_state(BackendState.LAUNCHING, model_path.name)
        try:
            await self._launch(executable, model_path)
        except OSError as e:
            self._fail(BackendUnhealthyError(f"Could not launch {executable}: {e}"))
            return

        if await self._await_health():
            process = self._process
            self._watcher = asyncio.create_task(self._watch_process(process))
            self._set_state(BackendState.HEALTHY, f"serving {model_path.name}")
            return

        exited = self._process is not None and self._process.returncode is not None
        await self._terminate_process()
        tail = "\n".join(list(self._output)[-5:])
        if exited:
            message = f"Backend exited during startup. Last output:\n{tail}"
        else:
            message = (
                f"Backend did not become healthy after {self.config.health_attempts} "
                f"health checks. Last output:\n{tail}"
            )
        self._fail(BackendUnhealthyError(message))

    def _fail(self, error: BaseException) -> None:
        self._discovery_failed = True
        self.last_error = str(error)
        logger.warning("Local model backend unavailable: %s", error)
        self._set_state(BackendState.UNHEALTHY, self.last_error)

    def format_args(self, executable: Path, model_path: Path) -> list[str]:
        """Command line for the child process."""
        n_ctx = self.profile.context_size
        gpu_layers = resolve_gpu_layers(self.model_config.n_gpu_layers, self.profile.gpu_offload)
        threads = self.config.n_threads or os.cpu_count() or 1
        return [
            str(executable),
            "--model", str(model_path),
            "--ctx-size", str(n_ctx),
            "--host", self.config.host,
            "--port", str(self.config.port),
            "--n-gpu-layers", str(gpu_layers),
            "--threads", str(threads),
        ]

    async def _launch(self, executable: Path, model_path: Path) -> None:
        args = self.format_args(executable, model_path)
        logger.info("Starting backend: %s", shlex.join(args))
        self._output.clear()
        self._process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._owns_process = True
        self.model_path = model_path
        self._start_pumps(self._process)

    async def _await_health(self) -> bool:
        for attempt in range(1, self.config.health_attempts + 1):
            if self._process is None or self._process.returncode is not None:
                return False
            if await self.client.health():
                logger.debug("Backend healthy after %d check(s)", attempt)
                return True
            await asyncio.sleep(self.config.health_interval)
        return False

    # ─── Process supervision ────────────────────────────────────────────

    async def _watch_process(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._process is not process:
            return  # terminated on purpose
        self._process = None
        self._owns_process = False
        await self._drain_pumps()
        reason = f"backend process exited with code {returncode}"
        logger.warning("Local model %s", reason)
        self.last_error = reason
        self._set_state(BackendState.UNHEALTHY, reason)

    async def _release_process(self) -> None:
        """Stop watching and terminate the owned child process, if there is one."""
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
        if self._process is not None:
            logger.info("Stopping backend process")
        await self._terminate_process()
        self._owns_process = False

    async def _terminate_process(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE)
            except asyncio.TimeoutError:
                logger.warning("Backend did not exit after SIGTERM; killing it")
                process.kill()
                await process.wait()
        await self._drain_pumps()

    def _start_pumps(self, process: asyncio.subprocess.Process) -> None:
        for stream, label in ((process.stdout, "stdout"), (process.stderr, "stderr")):
            if stream is not None:
                self._pumps.add(asyncio.create_task(self._pump_stream(stream, label)))

    async def _pump_stream(self, stream: asyncio.StreamReader, label: str) -> None:
        """Drain a child pipe into the log and the diagnostics buffer so it never blocks."""
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            self._output.append(text)
            logger.debug("[llama-server %s] %s", label, text)

    async def _drain_pumps(self) -> None:
        while self._pumps:
            task = self._pumps.pop()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
