"""Listener interfaces connecting traffic sources, sessions and viewers."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from .packet_record import PacketRecord


class RecordSink(Protocol):
    """Receives decoded records and fatal source errors, in arrival order."""

    def on_packet_record(self, record: PacketRecord) -> None:  # pragma: no cover - protocol definition
        ...

    def on_source_error(self, message: str) -> None:  # pragma: no cover - protocol definition
        ...


class ProcessEventHandler(Protocol):
    """Discrete events raised by a running capture process."""

    def on_stdout(self, data: bytes) -> None:  # pragma: no cover - protocol definition
        ...

    def on_stderr(self, data: bytes) -> None:  # pragma: no cover - protocol definition
        ...

    def on_process_error(self, message: str) -> None:  # pragma: no cover - protocol definition
        ...

    def on_process_exited(self, exit_code: int) -> None:  # pragma: no cover - protocol definition
        ...


class CaptureProcess(Protocol):
    """Handle to an external capture process."""

    def start(self, program: str, arguments: Sequence[str]) -> None:  # pragma: no cover - protocol definition
        ...

    def terminate(self) -> None:  # pragma: no cover - protocol definition
        ...

    def is_running(self) -> bool:  # pragma: no cover - protocol definition
        ...


class Subscriber(Protocol):
    """A viewer endpoint. ``send`` returns False when the message was dropped."""

    def send(self, event: str, payload: Mapping[str, Any]) -> bool:  # pragma: no cover - protocol definition
        ...


__all__ = ["CaptureProcess", "ProcessEventHandler", "RecordSink", "Subscriber"]
