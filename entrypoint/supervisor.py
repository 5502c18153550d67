from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import signal
from typing import Any, Callable, Sequence

from entrypoint.keyagent import KeyAgentSupervisor
from entrypoint.layout import SystemLayout
from entrypoint.settings import Settings

STOP_GRACE_SECONDS = 1.0


class SupervisorState(enum.Enum):
    LAUNCHING = "launching"
    SUPERVISING = "supervising"
    TERMINATING = "terminating"
    EXITED = "exited"


def build_sshd_command(settings: Settings, layout: SystemLayout) -> list[str]:
    # No -d flags: they put sshd into single-connection mode.
    args = [layout.sshd_bin, "-D", "-e"]
    if settings.port != 22:
        args += ["-p", str(settings.port)]
    args += ["-f", str(layout.sshd_config)]
    return args


def exit_status(returncode: int) -> int:
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class SshdSupervisor:
    def __init__(
        self,
        command: Sequence[str],
        agent: KeyAgentSupervisor | None = None,
        revalidate: Callable[[], None] | None = None,
        grace: float = STOP_GRACE_SECONDS,
        stop_requested: Callable[[], bool] | None = None,
    ):
        self.logger = logging.getLogger("entrypoint.supervisor")
        self.command = list(command)
        self.agent = agent
        self.revalidate = revalidate
        self.grace = grace
        self.stop_requested = stop_requested
        self.state = SupervisorState.LAUNCHING
        self.stop_event: asyncio.Event | None = None
        self.proc: asyncio.subprocess.Process | None = None

    def request_stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)

    def _stop_agent(self) -> None:
        if self.agent is None:
            return
        try:
            self.agent.stop()
        except OSError as exc:
            self.logger.warning("SSH agent cleanup failed: %s", exc)

    async def _terminate_daemon(self) -> None:
        proc = self.proc
        if proc is None or proc.returncode is not None:
            return
        self.logger.debug("Stopping SSH daemon (PID %s)...", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=self.grace)

    async def run(self, install_signals: bool = True) -> int:
        self.stop_event = asyncio.Event()
        if install_signals:
            self._install_signal_handlers()
        try:
            return await self._run()
        finally:
            if install_signals:
                self._remove_signal_handlers()
            self.state = SupervisorState.EXITED

    async def _run(self) -> int:
        assert self.stop_event is not None
        if self.revalidate is not None:
            self.revalidate()

        # A signal caught before the loop owned SIGTERM/SIGINT still counts.
        if self.stop_requested is not None and self.stop_requested():
            self.stop_event.set()
        if self.stop_event.is_set():
            self.state = SupervisorState.TERMINATING
            self.logger.info("Received termination signal, shutting down...")
            self._stop_agent()
            return 0

        self.logger.info("Starting SSH daemon with args: %s", " ".join(self.command[1:]))
        self.proc = await asyncio.create_subprocess_exec(*self.command)
        self.state = SupervisorState.SUPERVISING
        self.logger.debug("sshd started with PID %s", self.proc.pid)

        waiters: dict[str, asyncio.Task[Any]] = {
            "daemon": asyncio.create_task(self.proc.wait(), name="sshd-wait"),
            "stop": asyncio.create_task(self.stop_event.wait(), name="stop-wait"),
        }
        done, pending = await asyncio.wait(waiters.values(), return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if waiters["stop"] in done:
            self.state = SupervisorState.TERMINATING
            self.logger.info("Received termination signal, shutting down...")
            await self._terminate_daemon()
            self._stop_agent()
            return 0

        code = exit_status(self.proc.returncode or 0)
        if code == 0:
            self.logger.info("SSH daemon exited")
        else:
            self.logger.error("SSH daemon exited with status %s", code)
        self.state = SupervisorState.TERMINATING
        self._stop_agent()
        return code
