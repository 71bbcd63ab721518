"""Lifecycle state machine for one capture subprocess."""

from __future__ import annotations

import logging
from contextlib import closing
from enum import Enum
from typing import Callable, Optional

from .config import CaptureOptions
from .decoder import DecodeError, StreamDecoder
from .listeners import CaptureProcess, ProcessEventHandler, RecordSink

logger = logging.getLogger(__name__)

PERMISSION_PATTERNS = (
    "permission denied",
    "you don't have permission",
    "operation not permitted",
)
PERMISSION_MESSAGE = "Permission denied. Please run the server with sudo privileges."
SPAWN_FAILURE_MESSAGE = "Failed to start packet capture. Check permissions and tshark installation."
DECODE_FAILURE_MESSAGE = "Packet capture output could not be decoded."

_MAX_STDERR_TAIL = 4_096

ProcessFactory = Callable[[ProcessEventHandler], CaptureProcess]


class CaptureError(RuntimeError):
    """Raised when a capture session is used incorrectly."""


class CaptureState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class _RunEvents:
    """Routes process events to the supervisor while their run is current."""

    def __init__(self, supervisor: "CaptureSupervisor", generation: int) -> None:
        self._supervisor = supervisor
        self._generation = generation

    def _current(self) -> bool:
        return self._supervisor._generation == self._generation

    def on_stdout(self, data: bytes) -> None:
        if self._current():
            self._supervisor.on_stdout(data)

    def on_stderr(self, data: bytes) -> None:
        if self._current():
            self._supervisor.on_stderr(data)

    def on_process_error(self, message: str) -> None:
        if self._current():
            self._supervisor.on_process_error(message)

    def on_process_exited(self, exit_code: int) -> None:
        if self._current():
            self._supervisor.on_process_exited(exit_code)


class CaptureSupervisor:
    """Drives ``IDLE -> STARTING -> RUNNING -> STOPPED | FAILED`` for one session.

    Every transition is caused by one of the discrete events below, all of
    which run on the event-loop thread. Decoded records are forwarded to the
    sink synchronously and in stream order. Fatal conditions are reported
    once through ``sink.on_source_error``.
    """

    def __init__(
        self,
        sink: RecordSink,
        process_factory: ProcessFactory,
        *,
        options: Optional[CaptureOptions] = None,
    ) -> None:
        self._sink = sink
        self._process_factory = process_factory
        self.options = options or CaptureOptions()

        self._state = CaptureState.IDLE
        self._target: Optional[str] = None
        self._process: Optional[CaptureProcess] = None
        self._decoder: Optional[StreamDecoder] = None
        self._generation = 0

        self._stderr_tail = ""
        self._permission_reported = False
        self._consecutive_errors = 0
        self._decoded_mark = 0

    # ------------------------------------------------------------------
    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def target(self) -> Optional[str]:
        return self._target

    @property
    def decoder(self) -> Optional[StreamDecoder]:
        return self._decoder

    def is_running(self) -> bool:
        return self._state in (CaptureState.STARTING, CaptureState.RUNNING)

    # ------------------------------------------------------------------
    def start(self, target: str) -> bool:
        """Spawn the capture process on ``target``; rejects a second capture."""
        if not target:
            raise CaptureError("A capture target is required")
        if self.is_running():
            logger.warning("Capture already running on %s; ignoring start for %s", self._target, target)
            return False

        self._generation += 1
        self._state = CaptureState.STARTING
        self._target = target
        self._decoder = StreamDecoder(
            max_buffer_bytes=self.options.max_buffer_bytes,
            error_handler=self._on_decode_error,
        )
        self._stderr_tail = ""
        self._permission_reported = False
        self._consecutive_errors = 0
        self._decoded_mark = 0

        program, arguments = self.options.command(target)
        process = self._process_factory(_RunEvents(self, self._generation))
        self._process = process
        try:
            process.start(program, arguments)
        except Exception:
            logger.exception("Failed to spawn %s", program)
            self._fail(SPAWN_FAILURE_MESSAGE)
            return False

        # The process may already have reported a spawn error synchronously.
        if self._state is not CaptureState.STARTING:
            return False

        # No handshake: the first decoded record is the readiness signal.
        self._state = CaptureState.RUNNING
        logger.info("Capture started on %s: %s %s", target, program, " ".join(arguments))
        return True

    def stop(self) -> None:
        """Terminate the capture; safe to call in any state."""
        if not self.is_running():
            return
        self._state = CaptureState.STOPPED
        self._release()
        logger.info("Capture stopped on %s", self._target)

    # ------------------------------------------------------------------
    def on_stdout(self, data: bytes) -> None:
        if self._state is not CaptureState.RUNNING or self._decoder is None:
            return
        # Each record is delivered before later objects in the chunk are
        # decoded, so a failing run of errors cannot discard earlier records.
        with closing(self._decoder.decode(data)) as records:
            for record in records:
                if self._state is not CaptureState.RUNNING:
                    return
                try:
                    self._sink.on_packet_record(record)
                except Exception:
                    logger.exception("Record sink raised while handling a packet")

    def on_stderr(self, data: bytes) -> None:
        text = self._stderr_tail + data.decode("utf-8", errors="replace")
        lines = text.splitlines(keepends=True)
        self._stderr_tail = ""
        if lines and not lines[-1].endswith(("\n", "\r")):
            self._stderr_tail = lines.pop()[-_MAX_STDERR_TAIL:]
        for line in lines:
            self._handle_diagnostic(line.strip())

    def on_process_error(self, message: str) -> None:
        if not self.is_running():
            logger.debug("Ignoring process error after shutdown: %s", message)
            return
        self._fail(message)

    def on_process_exited(self, exit_code: int) -> None:
        if self._stderr_tail:
            tail, self._stderr_tail = self._stderr_tail, ""
            self._handle_diagnostic(tail.strip())
        if not self.is_running():
            logger.debug("Capture process exited with code %s", exit_code)
            return
        self._process = None
        if self._permission_reported:
            # The permission message already explains this exit.
            logger.info("Capture process exited with code %s after a permission failure", exit_code)
            self._fail(None)
            return
        self._fail(f"Packet capture exited unexpectedly (exit code {exit_code}).")

    # ------------------------------------------------------------------
    def _handle_diagnostic(self, line: str) -> None:
        if not line:
            return
        logger.info("tshark: %s", line)
        lowered = line.lower()
        if self._permission_reported or not any(p in lowered for p in PERMISSION_PATTERNS):
            return
        # Reported once; the caller decides whether to stop the capture.
        self._permission_reported = True
        self._notify_error(PERMISSION_MESSAGE)

    def _on_decode_error(self, error: DecodeError) -> None:
        decoder = self._decoder
        if decoder is None:
            return
        if decoder.records_decoded != self._decoded_mark:
            self._decoded_mark = decoder.records_decoded
            self._consecutive_errors = 0
        self._consecutive_errors += 1
        logger.warning("Dropped capture record on %s: %s", self._target, error)

        limit = self.options.max_consecutive_decode_errors
        if limit and self._consecutive_errors >= limit:
            self._fail(DECODE_FAILURE_MESSAGE)

    def _fail(self, message: Optional[str]) -> None:
        if self._state is CaptureState.FAILED:
            return
        self._state = CaptureState.FAILED
        self._release()
        if message is not None:
            self._notify_error(message)

    def _release(self) -> None:
        process = self._process
        self._process = None
        self._decoder = None
        if process is not None and process.is_running():
            try:
                process.terminate()
            except Exception:  # pragma: no cover - termination failures depend on the OS
                logger.exception("Failed to terminate capture process")

    def _notify_error(self, message: str) -> None:
        try:
            self._sink.on_source_error(message)
        except Exception:  # pragma: no cover - sink supplied by the session
            logger.exception("Record sink raised while handling an error")


__all__ = [
    "CaptureError",
    "CaptureState",
    "CaptureSupervisor",
    "DECODE_FAILURE_MESSAGE",
    "PERMISSION_MESSAGE",
    "ProcessFactory",
    "SPAWN_FAILURE_MESSAGE",
]
