"""QProcess-backed capture process feeding supervisor events from the Qt loop."""

from __future__ import annotations

import logging
from typing import Sequence, Set

from PySide6.QtCore import QObject, QProcess, QTimer

from .config import CaptureOptions
from .listeners import ProcessEventHandler
from .supervisor import SPAWN_FAILURE_MESSAGE, ProcessFactory

logger = logging.getLogger(__name__)


class QtCaptureProcess(QObject):
    """Wraps a QProcess and translates its signals into handler calls."""

    # Ownership: the supervisor drops its reference when it releases a run,
    # while the child may still be shutting down. terminate() parks the
    # object here and _on_finished removes it, so the QProcess and its
    # pending kill timer outlive the supervisor's reference but not the child.
    _terminating: Set["QtCaptureProcess"] = set()

    def __init__(
        self,
        handler: ProcessEventHandler,
        *,
        terminate_grace_ms: int = 2_000,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self._handler = handler
        self._terminate_grace_ms = terminate_grace_ms

        self._process = QProcess(self)
        self._process.readyReadStandardOutput.connect(self._on_stdout_ready)
        self._process.readyReadStandardError.connect(self._on_stderr_ready)
        self._process.errorOccurred.connect(self._on_error)
        self._process.finished.connect(self._on_finished)

    # ------------------------------------------------------------------
    def start(self, program: str, arguments: Sequence[str]) -> None:
        logger.debug("Spawning %s %s", program, " ".join(arguments))
        self._process.start(program, list(arguments))

    def terminate(self) -> None:
        if not self.is_running():
            return
        QtCaptureProcess._terminating.add(self)
        self._process.terminate()
        QTimer.singleShot(self._terminate_grace_ms, self._kill_if_running)

    def is_running(self) -> bool:
        return self._process.state() != QProcess.ProcessState.NotRunning

    # ------------------------------------------------------------------
    def _on_stdout_ready(self) -> None:
        data = self._process.readAllStandardOutput().data()
        if data:
            self._handler.on_stdout(bytes(data))

    def _on_stderr_ready(self) -> None:
        data = self._process.readAllStandardError().data()
        if data:
            self._handler.on_stderr(bytes(data))

    def _on_error(self, error: QProcess.ProcessError) -> None:
        if error == QProcess.ProcessError.Crashed and self in QtCaptureProcess._terminating:
            logger.debug("Capture process ended by terminate()")
            return
        if error == QProcess.ProcessError.FailedToStart:
            message = SPAWN_FAILURE_MESSAGE
        else:
            message = f"Packet capture process error: {self._process.errorString()}"
        logger.error("%s (%s)", message, error)
        self._handler.on_process_error(message)

    def _on_finished(self, exit_code: int, exit_status: QProcess.ExitStatus) -> None:
        self._on_stdout_ready()
        self._on_stderr_ready()
        logger.debug("Capture process finished: code=%s status=%s", exit_code, exit_status)
        QtCaptureProcess._terminating.discard(self)
        self._handler.on_process_exited(int(exit_code))

    def _kill_if_running(self) -> None:
        if self.is_running():
            logger.warning("Capture process ignored SIGTERM; killing it")
            self._process.kill()


def qt_process_factory(options: CaptureOptions) -> ProcessFactory:
    """Return a factory producing QtCaptureProcess instances for ``options``."""

    def factory(handler: ProcessEventHandler) -> QtCaptureProcess:
        return QtCaptureProcess(handler, terminate_grace_ms=options.terminate_grace_ms)

    return factory


__all__ = ["QtCaptureProcess", "qt_process_factory"]
