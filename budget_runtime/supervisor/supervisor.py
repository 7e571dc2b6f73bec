"""
budget_runtime/supervisor/supervisor.py
Two-process supervisor: API child, then (once healthy) the web-client child.

Responsibilities:
1. Spawn children in their own process group and re-emit their output
   with a role prefix ([API] / [WEB])
2. Gate the web client on the API health endpoint
3. Restart a crashed child up to a bound, then give up with exit code 1
4. Shut down web then API, gracefully first, forced after a grace period
5. Own the PID file used by `budget-runtime stop`
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, TextIO

import structlog

from .health_gate import HealthGate
from .pid_file import PidFile
from .process_tree import ProcessTreeKiller, get_process_tree_killer
from ..core.exceptions import (
    AlreadyRunningError,
    ChildSpawnError,
    HealthCheckTimeoutError,
    RestartLimitExceededError,
    RuntimeServiceException,
)
from ..core.logging import LogContext

logger = structlog.get_logger("supervisor")

STREAM_LIMIT = 1024 * 1024  # longest output line re-emitted in one piece
PUMP_DRAIN_TIMEOUT = 0.5


class ChildRole(str, Enum):
    API = "api"
    WEB = "web"

    @property
    def prefix(self) -> str:
        return f"[{self.value.upper()}]"


class SupervisorState(Enum):
    IDLE = "idle"
    STARTING_API = "starting_api"
    WAITING_HEALTH = "waiting_health"
    STARTING_WEB = "starting_web"
    RUNNING = "running"
    RESTARTING_API = "restarting_api"
    RESTARTING_WEB = "restarting_web"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_STARTING = {ChildRole.API: SupervisorState.STARTING_API, ChildRole.WEB: SupervisorState.STARTING_WEB}
_RESTARTING = {ChildRole.API: SupervisorState.RESTARTING_API, ChildRole.WEB: SupervisorState.RESTARTING_WEB}


@dataclass
class ChildSpec:
    """How to (re)start one child."""
    role: ChildRole
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None


@dataclass
class ChildProcess:
    """A running child owned by the supervisor."""
    role: ChildRole
    pid: int
    restart_count: int
    started_at: datetime
    process: asyncio.subprocess.Process = field(repr=False)
    exit_code: Optional[int] = None

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """
    Usage:
        supervisor = ProcessSupervisor(pid_file=PidFile(path))
        exit_code = await supervisor.run(api_spec, web_spec, health_url=...)
    """

    def __init__(
        self,
        max_restarts: int = 3,
        restart_delay: float = 1.0,
        shutdown_grace: float = 5.0,
        health_gate: Optional[HealthGate] = None,
        killer: Optional[ProcessTreeKiller] = None,
        pid_file: Optional[PidFile] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        browser_opener: Optional[Callable[[str], bool]] = webbrowser.open,
        browser_delay: float = 2.0,
    ):
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.shutdown_grace = shutdown_grace
        self.health_gate = health_gate or HealthGate()
        self._killer = killer or get_process_tree_killer()
        self._pid_file = pid_file
        self._stdout = stdout
        self._stderr = stderr
        self._browser_opener = browser_opener
        self._browser_delay = browser_delay

        self.restart_counts: Dict[ChildRole, int] = {role: 0 for role in ChildRole}
        self.exit_code: Optional[int] = None
        self.fatal_error: Optional[RuntimeServiceException] = None

        self._state = SupervisorState.IDLE
        # State to return to after a restart completes
        self._phase = SupervisorState.RUNNING
        self._orchestrating = False
        self._children: Dict[ChildRole, ChildProcess] = {}
        self._specs: Dict[ChildRole, ChildSpec] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._pumps: Set[asyncio.Task] = set()
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stopping

    def child(self, role: ChildRole) -> Optional[ChildProcess]:
        return self._children.get(ChildRole(role))

    def _transition(self, new_state: SupervisorState, **context) -> None:
        if new_state is self._state:
            return
        logger.info(
            "supervisor_state_changed",
            from_state=self._state.value,
            to_state=new_state.value,
            **context,
        )
        self._state = new_state

    def _track(self, coro, pump: bool = False) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        bucket = self._pumps if pump else self._tasks
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    # ------------------------------------------------------------------ #
    # Spawning
    # ------------------------------------------------------------------ #

    async def start(
        self,
        role: ChildRole,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> ChildProcess:
        """
        Spawn and supervise one child.

        Raises:
            ChildSpawnError: the command could not be executed
        """
        spec = ChildSpec(role=ChildRole(role), command=list(command), env=dict(env or {}), cwd=cwd)
        self._specs[spec.role] = spec
        self._transition(_STARTING[spec.role])
        child = await self._spawn(spec)
        if not self._orchestrating:
            self._phase = SupervisorState.RUNNING
            self._transition(SupervisorState.RUNNING)
        return child

    async def _spawn(self, spec: ChildSpec) -> ChildProcess:
        env = {**os.environ, **spec.env}
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(spec.cwd) if spec.cwd else None,
                limit=STREAM_LIMIT,
                **self._killer.spawn_kwargs(),
            )
        except OSError as e:
            logger.error("child_spawn_failed", role=spec.role.value, command=spec.command, error=str(e))
            raise ChildSpawnError(spec.role.value, spec.command, str(e)) from e

        child = ChildProcess(
            role=spec.role,
            pid=process.pid,
            restart_count=self.restart_counts[spec.role],
            started_at=datetime.now(timezone.utc),
            process=process,
        )
        self._children[spec.role] = child
        logger.info(
            "child_started",
            role=spec.role.value,
            pid=child.pid,
            restart_count=child.restart_count,
            command=spec.command,
        )

        self._track(self._pump(spec.role, process.stdout, is_stderr=False), pump=True)
        self._track(self._pump(spec.role, process.stderr, is_stderr=True), pump=True)
        self._track(self._watch(child))
        return child

    async def _pump(self, role: ChildRole, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        """Re-emit each line of a child stream with the role prefix."""
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT; emit what is buffered
                line = await stream.read(STREAM_LIMIT)
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text:
                continue
            sink = (self._stderr or sys.stderr) if is_stderr else (self._stdout or sys.stdout)
            sink.write(f"{role.prefix} {text}\n")
            sink.flush()

    # ------------------------------------------------------------------ #
    # Exit handling / restarts
    # ------------------------------------------------------------------ #

    async def _watch(self, child: ChildProcess) -> None:
        code = await child.process.wait()
        child.exit_code = code
        if self._children.get(child.role) is child:
            del self._children[child.role]

        with LogContext(role=child.role.value, pid=child.pid):
            if self._stopping:
                logger.info("child_stopped", exit_code=code)
                return
            logger.error("child_exited_unexpectedly", exit_code=code)
            await self._restart_or_give_up(child.role, code)

    async def _restart_or_give_up(self, role: ChildRole, code: Optional[int]) -> None:
        if self.restart_counts[role] >= self.max_restarts:
            error = RestartLimitExceededError(role.value, self.max_restarts, code)
            logger.error("restart_limit_exceeded", **error.details)
            self.fatal_error = error
            await self.shutdown(exit_code=1)
            return

        self.restart_counts[role] += 1
        attempt = self.restart_counts[role]
        self._transition(_RESTARTING[role], attempt=attempt, max_restarts=self.max_restarts)
        logger.warning("child_restart_scheduled", attempt=attempt, max_restarts=self.max_restarts, delay=self.restart_delay)

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.restart_delay)
        except asyncio.TimeoutError:
            pass
        if self._stopping:
            logger.info("restart_cancelled_by_shutdown")
            return

        self._transition(_STARTING[role], attempt=attempt)
        try:
            await self._spawn(self._specs[role])
        except ChildSpawnError as e:
            self.fatal_error = e
            await self.shutdown(exit_code=1)
            return
        self._transition(self._phase)

    # ------------------------------------------------------------------ #
    # Orchestration
    # ------------------------------------------------------------------ #

    async def run(
        self,
        api: ChildSpec,
        web: ChildSpec,
        health_url: str,
        health_timeout: float = 20.0,
        health_interval: float = 0.5,
        browser_url: Optional[str] = None,
        handle_signals: bool = True,
    ) -> int:
        """
        Full startup sequence; returns the process exit code once stopped.

        The web client is only started after the API health check passes.
        A health timeout shuts everything down with exit code 1.
        """
        self._orchestrating = True
        if handle_signals:
            self._install_signal_handlers()
        try:
            try:
                if self._pid_file is not None:
                    self._pid_file.write()

                self._phase = SupervisorState.STARTING_API
                await self.start(api.role, api.command, api.env, api.cwd)

                self._phase = SupervisorState.WAITING_HEALTH
                self._transition(SupervisorState.WAITING_HEALTH, url=health_url)
                healthy = await self._wait_healthy(health_url, health_timeout, health_interval)
                if not healthy:
                    return await self.wait_stopped()

                self._phase = SupervisorState.STARTING_WEB
                await self.start(web.role, web.command, web.env, web.cwd)

                self._phase = SupervisorState.RUNNING
                self._transition(SupervisorState.RUNNING)
                if browser_url and self._browser_opener is not None:
                    self._track(self._open_browser_later(browser_url))
            except AlreadyRunningError as e:
                logger.error("startup_failed", error=e.message)
                self.fatal_error = e
                await self.shutdown(exit_code=1)
            except (HealthCheckTimeoutError, ChildSpawnError) as e:
                logger.error("startup_failed", error=e.message, error_code=e.error_code)
                self.fatal_error = e
                await self.shutdown(exit_code=1)

            return await self.wait_stopped()
        finally:
            if handle_signals:
                self._remove_signal_handlers()

    async def _wait_healthy(self, url: str, timeout: float, interval: float) -> bool:
        """
        Poll the API health endpoint. Returns False if shutdown began first.

        Raises:
            HealthCheckTimeoutError
        """
        poll = asyncio.ensure_future(self.health_gate.poll(url, timeout=timeout, interval=interval))
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({poll, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
        if not poll.done():
            poll.cancel()
            await asyncio.gather(poll, return_exceptions=True)
            return False
        if self._stopping:
            # A restart bound or signal ended things while the last poll finished
            poll.exception()
            return False
        return poll.result()

    async def _open_browser_later(self, url: str) -> None:
        await asyncio.sleep(self._browser_delay)
        if self._stopping:
            return
        try:
            opened = await asyncio.to_thread(self._browser_opener, url)
        except Exception as e:
            logger.warning("browser_open_failed", url=url, error=str(e))
            opened = False
        if not opened:
            print(f"Open your browser to: {url}", file=self._stdout or sys.stdout)

    async def wait_stopped(self) -> int:
        await self._stopped.wait()
        return self.exit_code if self.exit_code is not None else 0

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def shutdown(self, exit_code: int = 0) -> int:
        """
        Stop both children (web first), then release the PID file.

        Idempotent: later callers wait for the first shutdown to finish and
        get its exit code.
        """
        if self._stopping:
            return await self.wait_stopped()
        self._stopping = True
        self.exit_code = exit_code
        self._stop_event.set()
        self._transition(SupervisorState.SHUTTING_DOWN, exit_code=exit_code)

        for role in (ChildRole.WEB, ChildRole.API):
            child = self._children.get(role)
            if child is not None and child.alive:
                await self._stop_child(child)
            self._children.pop(role, None)

        await self._cancel_background()

        if self._pid_file is not None:
            self._pid_file.remove()

        self._transition(SupervisorState.STOPPED, exit_code=exit_code)
        self._stopped.set()
        return exit_code

    async def _stop_child(self, child: ChildProcess) -> None:
        logger.info("stopping_child", role=child.role.value, pid=child.pid)
        self._killer.kill_tree(child.pid)
        try:
            await asyncio.wait_for(child.process.wait(), timeout=self.shutdown_grace)
            return
        except asyncio.TimeoutError:
            logger.warning("child_force_killed", role=child.role.value, pid=child.pid, grace=self.shutdown_grace)

        self._killer.kill_tree(child.pid, force=True)
        try:
            await asyncio.wait_for(child.process.wait(), timeout=self.shutdown_grace)
        except asyncio.TimeoutError:
            logger.error("child_did_not_exit", role=child.role.value, pid=child.pid)

    async def _cancel_background(self) -> None:
        current = asyncio.current_task()
        if self._pumps:
            # Let pumps flush the last lines of output
            await asyncio.wait(set(self._pumps), timeout=PUMP_DRAIN_TIMEOUT)
        pending = [t for t in (self._pumps | self._tasks) if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Signals
    # ------------------------------------------------------------------ #

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        if not self._stopping:
            self._track(self.shutdown(exit_code=0))

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows event loops: deliver via the C-level handler
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(self._on_signal, signal.Signals(signum)),
                )
            except (RuntimeError, ValueError) as e:
                # Not on the main thread
                logger.warning("signal_handlers_unavailable", error=str(e))
                return

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                signal.signal(sig, signal.SIG_DFL)


__all__ = [
    "ChildRole",
    "SupervisorState",
    "ChildSpec",
    "ChildProcess",
    "ProcessSupervisor",
]
