"""
Process Manager for Tunnel Sessions

Spawns the external ssh client, drains its combined output for the whole
process lifetime, detects readiness and dynamically allocated ports, and
terminates the process (and anything it spawned) exactly once.
"""

import asyncio
import os
import re
import signal
from collections import deque
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

import psutil
from rich.markup import escape

from tunnel_runner.core.logging import log_command, ssh_logger
from .exceptions import (
    AllocationTimeoutError,
    ConnectTimeoutError,
    NotStartedError,
    SessionClosedError,
    SpawnError,
    TunnelError,
)
from .schemas import Allocation, ForwardSpec, ProcessInfo

DEFAULT_READY_PATTERNS = (r"Authenticated to ",)
DEFAULT_ALLOCATION_PATTERNS = (
    # The destination host may be an unbracketed IPv6 address
    r"Allocated port (?P<port>\d+) for remote forward to "
    r"(?P<dest_host>\S+):(?P<dest_port>\d+)\s*$",
)

# Lines longer than this are discarded instead of parsed
_LINE_LIMIT = 1024 * 1024


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded output lines until EOF, skipping over-long lines."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Over-long line; readline already discarded it
            continue
        if not line:
            return
        yield line.decode("utf-8", errors="replace").rstrip("\r\n")


class SessionProcess:
    """
    Supervises one long-lived session process.

    This class is responsible for:
    - Spawning the process with stdout and stderr combined
    - Draining output continuously so the child never blocks on a full pipe
    - Pairing allocation announcements with the dynamic forwards requested
    - Tracking liveness through the exit notification of the process
    - Terminating the process tree, idempotently

    The drain task is the only writer of readiness and allocation state.
    """

    def __init__(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        dynamic_forwards: Sequence[ForwardSpec] = (),
        target_host: Optional[str] = None,
        ready_patterns: Optional[Sequence[str]] = None,
        allocation_patterns: Optional[Sequence[str]] = None,
        tail_lines: int = 50,
    ):
        self._argv = list(argv)
        self._env = dict(env or {})
        self._dynamic = tuple(dynamic_forwards)
        self._target_host = target_host
        self._ready_patterns: List[Pattern[str]] = [
            re.compile(p) for p in (ready_patterns or DEFAULT_READY_PATTERNS)
        ]
        self._allocation_patterns: List[Pattern[str]] = [
            re.compile(p) for p in (allocation_patterns or DEFAULT_ALLOCATION_PATTERNS)
        ]
        for pattern in self._allocation_patterns:
            if "port" not in pattern.groupindex:
                raise ValueError(
                    f"Allocation pattern {pattern.pattern!r} has no (?P<port>...) group"
                )

        self._process: Optional[asyncio.subprocess.Process] = None
        self._created_at: Optional[datetime] = None
        self._returncode: Optional[int] = None
        self._tail: deque = deque(maxlen=tail_lines)

        # Request index -> allocation, so results keep request order
        self._allocations: Dict[int, Allocation] = {}
        self._pending: List[int] = list(range(len(self._dynamic)))

        self._ready = asyncio.Event()
        self._allocated = asyncio.Event()
        self._exited = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._terminate_lock = asyncio.Lock()
        self._terminated = False

    # ------------------------------------------------------------------
    # Spawning and output draining
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """
        Spawn the session process and start draining its output.

        Returns:
            PID of the spawned process

        Raises:
            SpawnError: If the executable could not be started
        """
        if self._process is not None:
            raise SpawnError("Session process already started")

        env = None
        if self._env:
            env = {**os.environ, **self._env}

        log_command(ssh_logger, self._argv)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
                start_new_session=True,
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            raise SpawnError(f"Could not start {self._argv[0]!r}: {e}") from e

        self._created_at = datetime.now()
        if not self._dynamic:
            self._allocated.set()

        self._drain_task = asyncio.create_task(self._drain())
        self._watch_task = asyncio.create_task(self._watch_exit())
        ssh_logger.info(f"Session process started with PID: {self._process.pid}")
        return self._process.pid

    async def _drain(self) -> None:
        async for text in iter_lines(self._process.stdout):
            self._tail.append(text)
            ssh_logger.debug(f"[ssh]{self.pid}>[/ssh] {escape(text)}")
            try:
                self._handle_line(text)
            except Exception as e:
                # Keep draining; a stalled pipe would block the child
                ssh_logger.error(f"Error handling output line {escape(text)!r}: {escape(str(e))}")

    async def _watch_exit(self) -> None:
        self._returncode = await self._process.wait()
        self._exited.set()
        ssh_logger.info(
            f"Session process {self._process.pid} exited with status {self._returncode}"
        )

    def _handle_line(self, text: str) -> None:
        if not self._ready.is_set():
            if any(pattern.search(text) for pattern in self._ready_patterns):
                ssh_logger.info("Session authenticated")
                self._ready.set()

        for pattern in self._allocation_patterns:
            match = pattern.search(text)
            if match:
                self._record_allocation(match)
                break

    def _record_allocation(self, match: "re.Match[str]") -> None:
        groups = match.groupdict()
        port = int(groups["port"])
        # An allocation can only be announced by an established session
        self._ready.set()

        if not self._pending:
            ssh_logger.debug(f"Ignoring surplus allocation line: {escape(match.group(0))}")
            return

        chosen = None
        dest_host = groups.get("dest_host")
        dest_port = groups.get("dest_port")
        if dest_host and dest_port:
            dest_host = dest_host.strip("[]")
            for index in self._pending:
                spec = self._dynamic[index]
                if spec.dest_host == dest_host and spec.dest_port == int(dest_port):
                    chosen = index
                    break
        if chosen is None:
            chosen = self._pending[0]
        self._pending.remove(chosen)

        host = groups.get("host") or self._target_host or "localhost"
        allocation = Allocation(spec=self._dynamic[chosen], host=host, port=port)
        self._allocations[chosen] = allocation
        ssh_logger.info(
            f"Allocated {allocation.host}:{allocation.port} for remote forward "
            f"to {allocation.spec.dest_host}:{allocation.spec.dest_port}"
        )
        if not self._pending:
            self._allocated.set()

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def _wait_event(
        self,
        event: asyncio.Event,
        deadline: Optional[float],
        timeout_error: Callable[[], TunnelError],
    ) -> None:
        if event.is_set():
            return
        loop = asyncio.get_running_loop()
        timeout = None if deadline is None else max(0.0, deadline - loop.time())

        event_task = asyncio.ensure_future(event.wait())
        exit_task = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait(
                {event_task, exit_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (event_task, exit_task):
                if not task.done():
                    task.cancel()

        if not event.is_set() and self._exited.is_set():
            # Lines printed right before exit may still be buffered
            await self._finish_drain()
        if event.is_set():
            return
        if self._exited.is_set():
            raise SessionClosedError(
                f"Session process exited with status {self._returncode}: "
                f"{self.output_tail(5)}",
                returncode=self._returncode,
            )
        raise timeout_error()

    async def wait_ready(self, deadline: Optional[float]) -> None:
        """
        Wait until the session reports it is authenticated.

        Args:
            deadline: Event loop time after which to give up

        Raises:
            ConnectTimeoutError: If the deadline passes first
            SessionClosedError: If the process exits first
        """
        self._require_started()
        await self._wait_event(
            self._ready,
            deadline,
            lambda: ConnectTimeoutError(
                f"Session was not ready before the deadline: {self.output_tail(5)}"
            ),
        )

    async def wait_for_allocation(
        self, deadline: Optional[float]
    ) -> Optional[Tuple[Allocation, ...]]:
        """
        Wait until every dynamic forward has been announced.

        Returns:
            Allocations in request order, or None when no dynamic
            allocation was requested

        Raises:
            AllocationTimeoutError: If the deadline passes first
            SessionClosedError: If the process exits first
        """
        if not self._dynamic:
            return None
        self._require_started()
        await self._wait_event(
            self._allocated,
            deadline,
            lambda: AllocationTimeoutError(
                f"{len(self._pending)} of {len(self._dynamic)} dynamic forward(s) "
                f"were not announced before the deadline"
            ),
        )
        return self.allocations

    async def wait_closed(self) -> Optional[int]:
        """Wait for the process to exit and return its status."""
        self._require_started()
        await self._exited.wait()
        return self._returncode

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def terminate(self, grace: float = 5.0) -> None:
        """
        Stop the process: SIGTERM, wait ``grace`` seconds, then SIGKILL.

        Calling it again, or on a process that already exited or was never
        started, is a no-op.
        """
        async with self._terminate_lock:
            if self._process is None or self._terminated:
                return
            self._terminated = True
            pid = self._process.pid

            if not self._exited.is_set():
                # Snapshot children now; they are reparented once we exit
                children = self._children()
                try:
                    self._process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(self._exited.wait(), timeout=grace)
                    ssh_logger.info(f"Process {pid} terminated gracefully")
                except asyncio.TimeoutError:
                    self._kill_group()
                    try:
                        await asyncio.wait_for(self._exited.wait(), timeout=grace)
                    except asyncio.TimeoutError:
                        ssh_logger.error(f"Process {pid} did not exit after SIGKILL")
                    else:
                        ssh_logger.warning(f"Process {pid} force killed")
                if children:
                    await asyncio.to_thread(self._reap, children, grace)

            await self._finish_drain(grace)
            if self._watch_task is not None and not self._watch_task.done():
                self._watch_task.cancel()

    def _kill_group(self) -> None:
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    def _children(self) -> List[psutil.Process]:
        try:
            return psutil.Process(self._process.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    @staticmethod
    def _reap(children: List[psutil.Process], grace: float) -> None:
        alive = []
        for child in children:
            try:
                if child.is_running():
                    child.terminate()
                    alive.append(child)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        _, alive = psutil.wait_procs(alive, timeout=grace)
        for child in alive:
            try:
                child.kill()
                ssh_logger.warning(f"Child process {child.pid} force killed")
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    async def _finish_drain(self, timeout: float = 1.0) -> None:
        if self._drain_task is None or self._drain_task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._drain_task), timeout=timeout)
        except asyncio.TimeoutError:
            # Output pipe still held open by an orphaned descendant
            self._drain_task.cancel()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _require_started(self) -> None:
        if self._process is None:
            raise NotStartedError("Session process has not been started")

    @property
    def pid(self) -> int:
        self._require_started()
        return self._process.pid

    @property
    def started(self) -> bool:
        return self._process is not None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def allocations(self) -> Tuple[Allocation, ...]:
        return tuple(self._allocations[index] for index in sorted(self._allocations))

    def output_tail(self, lines: int = 10) -> str:
        """Last lines of output, joined for error messages."""
        return " | ".join(list(self._tail)[-lines:]) or "<no output>"

    def snapshot(self) -> ProcessInfo:
        """Point-in-time information about the process."""
        self._require_started()
        return ProcessInfo(
            pid=self._process.pid,
            is_alive=self.is_alive,
            created_at=self._created_at,
            returncode=self._returncode,
            allocations=self.allocations,
        )
