"""Process Supervisor - spawn and supervise external commands for a deployment.

Streams stdout/stderr in chunks to callbacks, ties the child to the
deployment's cancellation token and escalates SIGTERM to SIGKILL when the
child ignores the graceful request. Each child leads its own process group
so that teardown also reaches whatever it forked (ansible workers, ssh).
"""

import asyncio
import codecs
import os
import signal
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from constants import PIPE_DRAIN_GRACE, STREAM_CHUNK_SIZE
from core.logging import get_logger
from .cancellation import CancellationToken
from .exceptions import OperationCancelled

logger = get_logger(__name__)

ChunkCallback = Callable[[str], None]


@dataclass
class ProcessResult:
    returncode: Optional[int]
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and self.returncode == 0


@dataclass
class CommandResult:
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False


async def _pump(stream: asyncio.StreamReader, callback: ChunkCallback) -> None:
    """Forward decoded chunks until EOF; a multi-byte char split across reads is kept whole."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(STREAM_CHUNK_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                callback(tail)
            return
        text = decoder.decode(data)
        if text:
            callback(text)


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Send ``sig`` to the child's process group. False once nothing is left to signal."""
    try:
        os.killpg(process.pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        pass
    # The child left its group, or nothing in it is ours to signal
    if process.returncode is not None:
        return False
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        return False
    return True


async def terminate(process: asyncio.subprocess.Process, kill_timeout: float) -> None:
    """SIGTERM the process group, SIGKILL it if the child is still alive after ``kill_timeout``."""
    if process.returncode is not None:
        return
    if not _signal_group(process, signal.SIGTERM):
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=kill_timeout)
        return
    except asyncio.TimeoutError:
        logger.warning("Process ignored SIGTERM, killing", pid=process.pid, timeout=kill_timeout)
    _signal_group(process, signal.SIGKILL)
    try:
        await asyncio.wait_for(process.wait(), timeout=PIPE_DRAIN_GRACE)
    except asyncio.TimeoutError:
        logger.warning("Process output still held open after kill", pid=process.pid,
                       returncode=process.returncode)


class ProcessSupervisor:
    """Runs one child process bound to a cancellation token."""

    def __init__(
        self,
        binary: str,
        args: Sequence[str],
        cwd: str,
        token: CancellationToken,
        kill_timeout: float = 10.0,
        on_stdout: Optional[ChunkCallback] = None,
        on_stderr: Optional[ChunkCallback] = None,
        on_spawn: Optional[Callable[[asyncio.subprocess.Process], None]] = None,
    ):
        self.binary = binary
        self.args: List[str] = list(args)
        self.cwd = cwd
        self.token = token
        self.kill_timeout = kill_timeout
        self._on_stdout = on_stdout or (lambda _: None)
        self._on_stderr = on_stderr or (lambda _: None)
        self._on_spawn = on_spawn
        self.process: Optional[asyncio.subprocess.Process] = None
        self._teardown: Optional[asyncio.Task] = None

    async def run(self) -> ProcessResult:
        """Spawn the child and wait for it; spawn errors (OSError) propagate.

        Without cancellation this waits for exit and for EOF on both pipes.
        Once the token fires, the process group is torn down and the pipes
        get ``PIPE_DRAIN_GRACE`` seconds to close before reading stops.
        """
        if self.token.cancelled:
            return ProcessResult(returncode=None, cancelled=True)

        self.process = await asyncio.create_subprocess_exec(
            self.binary,
            *self.args,
            cwd=self.cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        logger.info("Process started", pid=self.process.pid, binary=self.binary, args=self.args)
        if self._on_spawn:
            self._on_spawn(self.process)

        output = asyncio.gather(
            self.process.wait(),
            _pump(self.process.stdout, self._on_stdout),
            _pump(self.process.stderr, self._on_stderr),
        )
        cancel_requested = asyncio.ensure_future(self.token.wait())
        self.token.add_callback(self._on_cancel)
        try:
            await asyncio.wait({output, cancel_requested}, return_when=asyncio.FIRST_COMPLETED)
            if self._teardown is not None:
                await self._teardown
            if not output.done():
                await self._drain(output)
            if not output.cancelled():
                output.result()
        except asyncio.CancelledError:
            await terminate(self.process, self.kill_timeout)
            output.cancel()
            raise
        finally:
            cancel_requested.cancel()
            self.token.remove_callback(self._on_cancel)

        returncode = self.process.returncode
        cancelled = self._teardown is not None
        logger.info("Process exited", pid=self.process.pid, returncode=returncode, cancelled=cancelled)
        return ProcessResult(returncode=returncode, cancelled=cancelled)

    async def _drain(self, output: asyncio.Future) -> None:
        await asyncio.wait({output}, timeout=PIPE_DRAIN_GRACE)
        if output.done():
            return
        logger.warning("Output pipes still open after teardown, stopping reads",
                       pid=self.process.pid, grace=PIPE_DRAIN_GRACE)
        output.cancel()
        await asyncio.wait({output})

    def _on_cancel(self, reason: str) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        logger.info("Terminating process on cancellation", pid=self.process.pid, reason=reason)
        self._teardown = asyncio.ensure_future(terminate(self.process, self.kill_timeout))


async def run_command(
    argv: Sequence[str],
    cwd: str,
    token: CancellationToken,
    timeout: float,
    kill_timeout: float = 5.0,
) -> CommandResult:
    """Run a short command to completion, bounded by ``timeout``.

    A timed out command is killed and reported with ``timed_out=True``.
    Raises ``OperationCancelled`` if the token fires first.
    """
    stdout: List[str] = []
    stderr: List[str] = []
    supervisor = ProcessSupervisor(
        argv[0],
        argv[1:],
        cwd,
        token,
        kill_timeout=kill_timeout,
        on_stdout=stdout.append,
        on_stderr=stderr.append,
    )
    try:
        result = await asyncio.wait_for(supervisor.run(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Command timed out", argv=list(argv), timeout=timeout)
        return CommandResult(None, "".join(stdout), "".join(stderr), timed_out=True)

    if result.cancelled:
        raise OperationCancelled(token.reason or "cancelled")
    return CommandResult(returncode=result.returncode, stdout="".join(stdout), stderr="".join(stderr))
