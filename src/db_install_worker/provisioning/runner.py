"""ansible-playbook execution with a deadline, live output and bounded capture."""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path

import structlog

from db_install_worker.config.models import AnsibleConfig
from db_install_worker.provisioning.errors import (
    PlaybookNotFoundError,
    ProcessLaunchError,
    ProcessNonZeroExitError,
    ProcessTimeoutError,
)
from db_install_worker.provisioning.models import RunResult

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n...[truncated]..."

# Upper bound on buffered bytes of an unterminated line before it is emitted
_MAX_PENDING_LINE = 64 * 1024
# How long to keep reading output once the process is gone
_DRAIN_TIMEOUT_SECONDS = 5.0

OutputSink = Callable[[str], None]


def log_sink(request_id: int) -> OutputSink:
    """Diagnostic sink that emits one structlog event per output line."""

    def _emit(line: str) -> None:
        logger.info("playbook.output", request_id=request_id, line=line)

    return _emit


class OutputCapture:
    """Keeps the first *limit* bytes of output and streams lines to a sink.

    Bytes past the limit are dropped and the captured text gets
    :data:`TRUNCATION_MARKER` appended; the sink still sees every line.
    """

    def __init__(self, limit: int, sink: OutputSink | None = None) -> None:
        self._limit = limit
        self._sink = sink
        self._buf = bytearray()
        self._pending = b""
        self._truncated = False

    @property
    def truncated(self) -> bool:
        return self._truncated

    def feed(self, chunk: bytes) -> None:
        room = self._limit - len(self._buf)
        if len(chunk) > room:
            self._truncated = True
        if room > 0:
            self._buf += chunk[:room]
        if self._sink is not None:
            self._emit_lines(chunk)

    def _emit_lines(self, chunk: bytes) -> None:
        assert self._sink is not None
        self._pending += chunk
        while b"\n" in self._pending:
            line, self._pending = self._pending.split(b"\n", 1)
            self._sink(line.decode("utf-8", errors="replace").rstrip("\r"))
        if len(self._pending) > _MAX_PENDING_LINE:
            self._sink(self._pending.decode("utf-8", errors="replace"))
            self._pending = b""

    def close(self) -> None:
        """Flush a trailing unterminated line to the sink."""
        if self._sink is not None and self._pending:
            self._sink(self._pending.decode("utf-8", errors="replace"))
        self._pending = b""

    def text(self) -> str:
        if not self._truncated:
            return self._buf.decode("utf-8", errors="replace")
        # The limit may split a multi-byte character; drop its leading bytes
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        return decoder.decode(bytes(self._buf), final=False) + TRUNCATION_MARKER


def _exit_code(returncode: int) -> int:
    """Map asyncio's ``-signum`` for signalled processes to the shell's 128+n."""
    return 128 - returncode if returncode < 0 else returncode


class PlaybookRunner:
    """Runs ``ansible-playbook -i <inventory> <playbook>`` for one request."""

    def __init__(
        self,
        config: AnsibleConfig,
        *,
        sink_factory: Callable[[int], OutputSink] = log_sink,
    ) -> None:
        self._config = config
        self._sink_factory = sink_factory

    def build_command(self, inventory: Path, playbook: Path) -> list[str]:
        return [*self._config.command, "-i", str(inventory), str(playbook)]

    async def run(
        self,
        inventory: Path,
        playbook: Path,
        *,
        shutdown: asyncio.Event,
        request_id: int = 0,
    ) -> RunResult:
        """Run the tool to completion, deadline, or shutdown.

        Raises a :class:`ProvisioningError` subclass for every outcome other
        than exit code 0; timeout and nonzero-exit errors carry the output
        captured so far.
        """
        if not playbook.is_file():
            msg = f"playbook not found at {playbook}"
            raise PlaybookNotFoundError(msg)
        if shutdown.is_set():
            msg = "ansible-playbook cancelled before launch: worker shutting down"
            raise ProcessTimeoutError(msg)

        cmd = self.build_command(inventory, playbook)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            msg = f"start {cmd[0]}: {exc}"
            raise ProcessLaunchError(msg) from exc

        timeout = self._config.timeout_seconds
        logger.info(
            "playbook.started",
            request_id=request_id,
            pid=proc.pid,
            playbook=str(playbook),
            timeout_seconds=timeout,
        )

        capture = OutputCapture(
            self._config.max_output_bytes, self._sink_factory(request_id)
        )
        assert proc.stdout is not None
        pump = asyncio.create_task(self._pump(proc.stdout, capture))
        waiter = asyncio.create_task(proc.wait())
        stopper = asyncio.create_task(shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, stopper},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._signal_group(proc, signal.SIGKILL)
            pump.cancel()
            waiter.cancel()
            raise
        finally:
            stopper.cancel()

        if waiter not in done:
            if shutdown.is_set():
                reason = "cancelled: worker shutting down"
            else:
                reason = f"timed out after {timeout:g}s"
            await self._terminate(proc, waiter)
            await self._drain(pump)
            capture.close()
            logger.warning(
                "playbook.timeout",
                request_id=request_id,
                pid=proc.pid,
                reason=reason,
            )
            raise ProcessTimeoutError(
                f"ansible-playbook {reason}", output=capture.text()
            )

        await self._drain(pump)
        capture.close()
        code = _exit_code(waiter.result())
        logger.info(
            "playbook.finished",
            request_id=request_id,
            exit_code=code,
            output_truncated=capture.truncated,
        )
        if code != 0:
            raise ProcessNonZeroExitError(
                f"ansible-playbook exited with code {code}",
                exit_code=code,
                output=capture.text(),
            )
        return RunResult(exit_code=0, output=capture.text())

    async def _pump(self, stream: asyncio.StreamReader, capture: OutputCapture) -> None:
        while chunk := await stream.read(self._config.read_chunk_bytes):
            capture.feed(chunk)

    async def _drain(self, pump: asyncio.Task[None]) -> None:
        """Wait for the output reader; give up if a grandchild holds the pipe."""
        try:
            await asyncio.wait_for(pump, timeout=_DRAIN_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("playbook.output_drain_timeout")

    async def _terminate(
        self, proc: asyncio.subprocess.Process, waiter: asyncio.Task[int]
    ) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(
                asyncio.shield(waiter), timeout=self._config.kill_grace_seconds
            )
        except TimeoutError:
            self._signal_group(proc, signal.SIGKILL)
            await waiter

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if proc.returncode is not None:
            return
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, sig)
