"""
Tunnel Session Service

Drives one tunnel session through its lifecycle:
connect -> allocation -> ready -> command -> post-command -> teardown.
Teardown always runs once a process exists, whatever happened before it.
"""

import asyncio
import shlex
from typing import List, Optional

from rich.markup import escape

from tunnel_runner.core.config import Settings, get_settings
from tunnel_runner.core.logging import log_command, log_ssh_connection, ssh_logger, tunnel_logger
from .command_builder import (
    build_command,
    build_environment,
    build_remote_command,
    format_command,
    validate_plan,
)
from .credentials import stage_credentials
from .enums import SessionState
from .exceptions import (
    CancellationError,
    CommandExecutionError,
    SessionClosedError,
    SpawnError,
    TunnelError,
)
from .process_manager import SessionProcess, iter_lines
from .schemas import (
    AuthMaterial,
    CommandPlan,
    ConnectionTarget,
    SessionResult,
    StagedCredentials,
)
from .spec_parser import parse_jump_hosts, parse_local_forwards, parse_remote_forwards


def plan_from_settings(config: Settings) -> CommandPlan:
    """
    Build a CommandPlan from input settings.

    Raises:
        SpecFormatError: If a forward or jump-host entry is malformed
        InvalidPlanError: If the result has no usable destination
    """
    plan = CommandPlan(
        target=ConnectionTarget(
            host=config.HOST.strip(),
            port=config.PORT,
            username=config.USERNAME or None,
        ),
        jump_chain=parse_jump_hosts(config.JUMP_HOSTS),
        local_forwards=parse_local_forwards(config.LOCAL_FORWARDS),
        remote_forwards=parse_remote_forwards(config.REMOTE_FORWARDS),
        auth=AuthMaterial(
            private_key=config.PRIVATE_KEY,
            private_key_path=config.PRIVATE_KEY_PATH,
            password=config.PASSWORD,
            known_hosts=config.KNOWN_HOSTS,
        ),
        extra_flags=tuple(shlex.split(config.EXTRA_FLAGS or "")),
        timeout=config.TIMEOUT,
        keep_alive=config.KEEP_ALIVE,
        command=config.COMMAND,
        post_command=config.POST_COMMAND,
        dry_run=config.DRY_RUN,
    )
    validate_plan(plan)
    return plan


class TunnelSessionService:
    """
    Lifecycle controller for one tunnel session.

    This service:
    1. Stages credentials for the lifetime of the session
    2. Builds the ssh invocation and hands it to a SessionProcess
    3. Waits for readiness and dynamic allocations within the timeout
    4. Runs the primary and post commands through the control socket
    5. Tears the process down and releases credentials on every path

    Cancellation is cooperative: it is observed at every state boundary
    and while waiting, never in the middle of a running command.
    """

    def __init__(
        self,
        plan: CommandPlan,
        config: Optional[Settings] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.plan = plan
        self.config = config or get_settings()
        self._cancel = cancel_event or asyncio.Event()

        self._state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self._process: Optional[SessionProcess] = None
        self._argv: tuple = ()
        self._error: Optional[TunnelError] = None
        self._failed_phase: Optional[str] = None
        self._command_status: Optional[int] = None
        self._post_command_status: Optional[int] = None
        self._result: Optional[SessionResult] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def process(self) -> Optional[SessionProcess]:
        return self._process

    def cancel(self) -> None:
        """Request cancellation; teardown still runs to completion."""
        self._cancel.set()

    def _transition(self, state: SessionState) -> None:
        if state is self._state:
            return
        tunnel_logger.info(f"[tunnel]{self._state.value}[/tunnel] -> [tunnel]{state.value}[/tunnel]")
        self._state = state
        self.history.append(state)

    def _fail(self, error: TunnelError) -> None:
        if error.phase is None:
            error.phase = self._state.value
        if self._error is None:
            self._error = error
            self._failed_phase = error.phase
            tunnel_logger.error(f"Session failed during {error.phase}: {escape(str(error))}")
        else:
            tunnel_logger.warning(f"Additional error during {error.phase}: {escape(str(error))}")

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise CancellationError(
                f"Cancellation requested during {self._state.value}",
                phase=self._state.value,
            )

    async def _until(self, awaitable):
        """Await ``awaitable`` unless cancellation is requested first."""
        task = asyncio.ensure_future(awaitable)
        cancel_task = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (task, cancel_task):
                if not pending.done():
                    pending.cancel()
        if task.done() and not task.cancelled():
            return task.result()
        raise CancellationError(
            f"Cancelled while waiting in {self._state.value}", phase=self._state.value
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> SessionResult:
        """
        Run the session to completion.

        Returns:
            Frozen SessionResult; failures after spawn are reported in it

        Raises:
            InvalidPlanError: If the plan cannot be built (no process exists)
        """
        if self._result is not None:
            return self._result

        plan = self.plan
        validate_plan(plan)
        control_socket = bool(plan.command or plan.post_command)
        try:
            with stage_credentials(plan.auth, control_socket=control_socket) as credentials:
                argv = build_command(
                    plan,
                    credentials,
                    ssh_binary=self.config.SSH_BINARY,
                    sshpass_binary=self.config.SSHPASS_BINARY,
                )
                self._argv = tuple(argv)
                if plan.dry_run:
                    tunnel_logger.info(f"Dry run, not spawning: {escape(format_command(argv))}")
                else:
                    await self._run_session(argv, credentials)
        finally:
            self._transition(SessionState.TERMINATED)

        self._result = self._freeze()
        return self._result

    async def _run_session(self, argv: List[str], credentials: StagedCredentials) -> None:
        plan = self.plan
        log_ssh_connection(plan.target.host, plan.target.username or "", plan.auth.methods())
        self._transition(SessionState.CONNECTING)
        process = SessionProcess(
            argv,
            env=build_environment(plan),
            dynamic_forwards=plan.dynamic_forwards,
            target_host=plan.target.host,
            ready_patterns=self.config.READY_PATTERNS,
            allocation_patterns=self.config.ALLOCATION_PATTERNS,
        )
        self._process = process
        try:
            await self._drive(process, credentials)
        except TunnelError as e:
            self._fail(e)
        except asyncio.CancelledError:
            self._fail(CancellationError("Session task was cancelled"))
            raise
        finally:
            self._transition(SessionState.TEARING_DOWN)
            await process.terminate(self.config.TERMINATE_GRACE)

    async def _drive(self, process: SessionProcess, credentials: StagedCredentials) -> None:
        plan = self.plan
        loop = asyncio.get_running_loop()
        # One budget covers connect and allocation
        deadline = loop.time() + plan.timeout

        self._check_cancelled()
        pid = await process.start()
        tunnel_logger.info(f"Session process PID: {pid}")

        await self._until(process.wait_ready(deadline))

        if plan.dynamic_forwards:
            self._check_cancelled()
            self._transition(SessionState.ALLOCATION_PENDING)
            await self._until(process.wait_for_allocation(deadline))

        self._check_cancelled()
        self._transition(SessionState.READY)

        if not plan.command and not plan.post_command:
            await self._serve(process)
            return

        if plan.command:
            self._transition(SessionState.RUNNING)
            self._command_status = await self._run_step(plan.command, credentials)
        else:
            self._check_cancelled()

        # Cleanup always gets its chance once the primary command ran
        if plan.post_command:
            self._transition(SessionState.POST_RUNNING)
            self._post_command_status = await self._run_step(plan.post_command, credentials)

        self._check_cancelled()

    async def _serve(self, process: SessionProcess) -> None:
        """Hold the session open until cancelled, closed or the horizon passes."""
        hold = self.config.HOLD
        if hold is None:
            tunnel_logger.info("Session ready; serving forwards until cancelled")
        else:
            tunnel_logger.info(f"Session ready; serving forwards for {hold}s")

        cancel_task = asyncio.ensure_future(self._cancel.wait())
        closed_task = asyncio.ensure_future(process.wait_closed())
        try:
            await asyncio.wait(
                {cancel_task, closed_task},
                timeout=hold,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (cancel_task, closed_task):
                if not task.done():
                    task.cancel()

        self._check_cancelled()
        if not process.is_alive:
            raise SessionClosedError(
                f"Session process exited with status {process.returncode} while serving: "
                f"{process.output_tail(5)}",
                returncode=process.returncode,
            )
        tunnel_logger.info("Serving horizon reached")

    async def _run_step(self, command: str, credentials: StagedCredentials) -> Optional[int]:
        try:
            status = await self._execute(command, credentials)
        except SpawnError as e:
            self._fail(e)
            return None
        if status != 0:
            self._fail(CommandExecutionError(command, status, phase=self._state.value))
        return status

    async def _execute(self, command: str, credentials: StagedCredentials) -> int:
        """Run one command through the session and stream its output."""
        argv = build_remote_command(
            self.plan, credentials, command, ssh_binary=self.config.SSH_BINARY
        )
        log_command(tunnel_logger, argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise SpawnError(f"Could not run command through {argv[0]!r}: {e}") from e

        async for text in iter_lines(proc.stdout):
            ssh_logger.info(f"[ssh]{self._state.value.lower()}>[/ssh] {escape(text)}")
        status = await proc.wait()
        tunnel_logger.info(f"Command finished with status {status}")
        return status

    def _freeze(self) -> SessionResult:
        process = self._process
        started = process is not None and process.started
        return SessionResult(
            state=self._state,
            argv=self._argv,
            pid=process.pid if started else None,
            allocations=process.allocations if process is not None else (),
            command_status=self._command_status,
            post_command_status=self._post_command_status,
            returncode=process.returncode if process is not None else None,
            error=self._error,
            failed_phase=self._failed_phase,
            dry_run=self.plan.dry_run,
        )
