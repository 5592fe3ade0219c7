"""Supervision of Q Developer CLI processes.

One run = one ``q chat`` child process bound to a session ID:

1. Stage inline image attachments into a per-run directory
2. Spawn ``q chat [prompt] --verbose`` in the project directory, colors off
3. Register the process under its session ID (so it can be aborted)
4. Stream stdout/stderr chunks to the run's event sink as they arrive
5. On exit: unregister, remove staged files, emit exactly one terminal event

Process exit and launch failure are both reported as a ``ProcessOutcome`` and
handled by a single finishing step, so a run cannot emit two terminal events.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from qpanel.core.config import PanelConfig
from qpanel.core.models import EventType, RunOptions, RunResult, StreamEvent
from qpanel.process.attachments import StagedAttachments, augment_prompt, stage_attachments
from qpanel.process.registry import ProcessHandle, ProcessRegistry
from qpanel.process.sinks import EventSink, NullSink

logger = logging.getLogger(__name__)

# Forced on the child so captured text is free of ANSI escapes
NO_COLOR_ENV = {"FORCE_COLOR": "0", "NO_COLOR": "1"}


class SupervisorError(Exception):
    """Error in a supervised Q CLI run."""

    pass


class LaunchError(SupervisorError):
    """The Q CLI process could not be started."""

    pass


class SessionBusyError(SupervisorError):
    """A run is already active for the session ID."""

    pass


class RunFailedError(SupervisorError):
    """The Q CLI exited with a non-zero code."""

    def __init__(self, session_id: str, exit_code: int, stderr: str):
        self.session_id = session_id
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Q CLI exited with code {exit_code}: {stderr}")


@dataclass(frozen=True)
class ProcessExited:
    """The child ran and exited (possibly via a signal: negative code)."""

    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class LaunchFailed:
    """The child never started."""

    error: str


ProcessOutcome = ProcessExited | LaunchFailed


def generate_session_id() -> str:
    return f"q-session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def build_command(config: PanelConfig, prompt: str, options: RunOptions) -> list[str]:
    """Build the argv for one run: binary, subcommand, prompt, verbosity flag.

    The prompt is a single positional argument and is omitted when blank.
    With ``pass_tool_flags`` enabled, resume and trust options are placed
    before the verbosity flag.
    """
    argv = [config.cli_binary, config.chat_subcommand]
    if prompt and prompt.strip():
        argv.append(prompt)

    if config.pass_tool_flags:
        if options.resume:
            argv.append("--resume")
        settings = options.tools_settings
        if settings.skip_permissions:
            argv.append("--trust-all-tools")
        elif settings.allowed_tools:
            argv.append("--trust-tools=" + ",".join(settings.allowed_tools))

    argv.append(config.verbose_flag)
    return argv


def build_environment(config: PanelConfig) -> dict[str, str]:
    env = dict(os.environ)
    env.update(config.extra_env)
    env.update(NO_COLOR_ENV)
    return env


@dataclass
class _Run:
    """Mutable per-run state, private to one ``start`` call."""

    session_id: str
    sink: EventSink
    staged: StagedAttachments = field(default_factory=StagedAttachments)
    process: asyncio.subprocess.Process | None = None
    started_sent: bool = False
    stdout_parts: list[str] = field(default_factory=list)
    stderr_parts: list[str] = field(default_factory=list)


class QProcessSupervisor:
    """Run Q CLI invocations with live streaming and abort support.

    The session registry is owned by the supervisor instance (created with it,
    cleared by ``shutdown``). Several runs with distinct session IDs may be
    active at once; a session ID can only have one live run.
    """

    def __init__(
        self,
        config: PanelConfig | None = None,
        registry: ProcessRegistry | None = None,
    ):
        self.config = config or PanelConfig()
        self.registry = registry if registry is not None else ProcessRegistry()
        # Session IDs with a run in flight, from the busy check until the terminal
        # event. An aborted run leaves the registry at once but stays here.
        self._running: set[str] = set()
        self._escalations: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ start

    async def start(
        self,
        command: str,
        options: RunOptions | None = None,
        sink: EventSink | None = None,
    ) -> RunResult:
        """Run ``q chat`` to completion, streaming events to ``sink``.

        Returns:
            RunResult with the accumulated stdout when the exit code is 0.

        Raises:
            SessionBusyError: The session ID already has a live run (nothing
                              is staged or emitted).
            LaunchError: The process could not be started. One ``q-error``
                         event with ``error`` was emitted, no ``q-complete``.
            RunFailedError: Non-zero exit. ``q-complete`` was emitted.
        """
        options = options or RunOptions()
        session_id = options.session_id or generate_session_id()

        if session_id in self._running:
            raise SessionBusyError(f"Session already running: {session_id}")
        self._running.add(session_id)

        run = _Run(session_id=session_id, sink=sink or NullSink())
        try:
            outcome = await self._execute(run, command or "", options)
            self._cleanup(run)
            await self._finish(run, outcome)
        finally:
            self._cleanup(run)
            self._running.discard(session_id)

        if isinstance(outcome, LaunchFailed):
            raise LaunchError(outcome.error)
        if outcome.exit_code != 0:
            raise RunFailedError(session_id, outcome.exit_code, outcome.stderr)
        return RunResult(output=outcome.stdout, session_id=session_id)

    def _resolve_workdir(self, options: RunOptions) -> Path:
        raw = options.cwd or options.project_path
        workdir = Path(raw).expanduser() if raw else Path.cwd()
        if not workdir.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {workdir}")
        return workdir

    async def _execute(self, run: _Run, command: str, options: RunOptions) -> ProcessOutcome:
        try:
            workdir = self._resolve_workdir(options)
        except FileNotFoundError as e:
            return LaunchFailed(str(e))

        run.staged = stage_attachments(options.images, workdir, self.config.staging_subdir)
        prompt = augment_prompt(command, run.staged.paths)
        argv = build_command(self.config, prompt, options)

        logger.info(f"Spawning Q CLI for session {run.session_id} with args: {argv[1:]}")
        logger.info(f"Working directory: {workdir}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                env=build_environment(self.config),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Q process error for session {run.session_id}: {e}")
            return LaunchFailed(f"Failed to start {self.config.cli_binary}: {e}")

        # Registered before any output is read so an abort can always find it
        run.process = process
        self.registry.add(run.session_id, process)
        await self._emit_session_created(run)

        readers = [
            asyncio.create_task(self._pump(run, process.stdout, EventType.OUTPUT)),
            asyncio.create_task(self._pump(run, process.stderr, EventType.ERROR)),
        ]
        try:
            await asyncio.gather(*readers)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            raise

        logger.info(f"Q process for session {run.session_id} exited with code {exit_code}")
        return ProcessExited(
            exit_code=exit_code,
            stdout="".join(run.stdout_parts),
            stderr="".join(run.stderr_parts),
        )

    async def _pump(
        self,
        run: _Run,
        stream: asyncio.StreamReader | None,
        event_type: EventType,
    ) -> None:
        """Forward each read from one pipe as a chunk event."""
        if stream is None:
            return
        parts = run.stdout_parts if event_type is EventType.OUTPUT else run.stderr_parts
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            raw = await stream.read(self.config.read_chunk_size)
            text = decoder.decode(raw, final=not raw)
            if text:
                parts.append(text)
                logger.debug(f"Q {event_type.value} [{run.session_id}]: {text!r}")
                if event_type is EventType.OUTPUT:
                    await self._emit(run, StreamEvent.output(run.session_id, text))
                else:
                    await self._emit(run, StreamEvent.error_chunk(run.session_id, text))
            if not raw:
                return

    async def _emit_session_created(self, run: _Run) -> None:
        if run.started_sent:
            return
        run.started_sent = True
        await self._emit(run, StreamEvent.session_created(run.session_id))

    async def _emit(self, run: _Run, event: StreamEvent) -> None:
        # A broken sink must not take the run down with it
        try:
            await run.sink.emit(event)
        except Exception as e:
            logger.error(f"Error sending {event.type.value} event for {run.session_id}: {e}")

    async def _finish(self, run: _Run, outcome: ProcessOutcome) -> None:
        """Emit the single terminal event for a run."""
        if isinstance(outcome, LaunchFailed):
            await self._emit(run, StreamEvent.launch_error(run.session_id, outcome.error))
        else:
            await self._emit(run, StreamEvent.complete(run.session_id, outcome.exit_code))

    def _cleanup(self, run: _Run) -> None:
        """Unregister the run's process and remove staged files. Idempotent."""
        if run.process is not None:
            self.registry.discard(run.session_id, run.process)
        run.staged.cleanup()

    # ------------------------------------------------------------------ abort

    async def abort(self, session_id: str) -> bool:
        """Terminate a session's process: SIGTERM now, SIGKILL after the grace period.

        The session is unregistered as soon as SIGTERM is sent; the caller does
        not wait for the process to die. The session ID stays busy until the
        dying run has emitted its ``q-complete``.

        Returns:
            True if a live process was found and signalled, False otherwise.
        """
        logger.info(f"Attempting to abort Q session: {session_id}")
        handle = self.registry.get(session_id)
        if handle is None:
            logger.info(f"No active Q process found for session: {session_id}")
            return False

        if handle.returncode is not None:
            # Exited naturally; its run has not unregistered yet
            self.registry.discard(session_id, handle)
            return False

        try:
            handle.terminate()
        except ProcessLookupError:
            self.registry.discard(session_id, handle)
            return False

        self.registry.discard(session_id, handle)
        task = asyncio.create_task(self._escalate(session_id, handle))
        self._escalations.add(task)
        task.add_done_callback(self._escalations.discard)
        logger.info(f"Q session aborted: {session_id}")
        return True

    async def _escalate(self, session_id: str, handle: ProcessHandle) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.config.abort_grace_period)
        except TimeoutError:
            if handle.returncode is None:
                logger.info(f"Force killing Q session: {session_id}")
                with contextlib.suppress(ProcessLookupError):
                    handle.kill()

    # --------------------------------------------------------------- shutdown

    def active_sessions(self) -> list[str]:
        return self.registry.session_ids()

    def shutdown(self) -> int:
        """Terminate every live process and clear the registry.

        Returns:
            Number of processes signalled.
        """
        for task in list(self._escalations):
            task.cancel()
        self._escalations.clear()

        signalled = 0
        for session_id, handle in self.registry.clear():
            if handle.returncode is not None:
                continue
            try:
                handle.terminate()
                signalled += 1
            except ProcessLookupError:
                continue
            logger.info(f"Terminated Q process for session {session_id} on shutdown")
        return signalled
