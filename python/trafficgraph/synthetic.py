"""Timer-driven generator of plausible traffic for demos and tests."""

from __future__ import annotations

import logging
import random
import time
from typing import Optional, Sequence

from PySide6.QtCore import QObject, QTimer

from .listeners import RecordSink
from .packet_record import PacketRecord, TransportProtocol

logger = logging.getLogger(__name__)

DEFAULT_ADDRESSES = (
    "192.168.1.1",
    "192.168.1.2",
    "192.168.1.100",
    "10.0.0.1",
    "10.0.0.2",
    "10.0.0.3",
    "172.16.0.1",
    "8.8.8.8",
    "1.1.1.1",
)
APPLICATION_PROTOCOLS = ("TCP", "UDP", "HTTP", "HTTPS", "DNS")

# Application protocol -> (transport, well-known destination port)
_PROFILES = {
    "TCP": (TransportProtocol.TCP, None),
    "HTTP": (TransportProtocol.TCP, 80),
    "HTTPS": (TransportProtocol.TCP, 443),
    "UDP": (TransportProtocol.UDP, None),
    "DNS": (TransportProtocol.UDP, 53),
}

MIN_BYTES = 50
MAX_BYTES = 1_549
_EPHEMERAL_LOW = 1_024
_EPHEMERAL_HIGH = 61_023


class SyntheticTrafficSource(QObject):
    """Emits one random PacketRecord per timer tick to the current sink."""

    def __init__(
        self,
        *,
        interval_ms: int = 500,
        addresses: Sequence[str] = DEFAULT_ADDRESSES,
        rng: Optional[random.Random] = None,
        parent=None,
    ) -> None:
        super().__init__(parent)
        self.addresses = tuple(dict.fromkeys(addresses))
        if len(self.addresses) < 2:
            raise ValueError("At least two distinct addresses are required")
        self._rng = rng or random.Random()
        self._sink: Optional[RecordSink] = None

        self._timer = QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self._on_tick)

    # ------------------------------------------------------------------
    @property
    def interval_ms(self) -> int:
        return self._timer.interval()

    def is_running(self) -> bool:
        return self._sink is not None

    def start(self, sink: RecordSink) -> None:
        if self._sink is not None:
            return
        self._sink = sink
        self._timer.start()
        logger.info("Synthetic traffic started (every %d ms)", self.interval_ms)

    def stop(self) -> None:
        if self._sink is None:
            return
        self._timer.stop()
        self._sink = None
        logger.info("Synthetic traffic stopped")

    # ------------------------------------------------------------------
    def generate_record(self) -> PacketRecord:
        source, dest = self._rng.sample(self.addresses, 2)
        application = self._rng.choice(APPLICATION_PROTOCOLS)
        transport, well_known_port = _PROFILES[application]

        source_port = self._rng.randint(_EPHEMERAL_LOW, _EPHEMERAL_HIGH)
        dest_port = well_known_port or self._rng.randint(_EPHEMERAL_LOW, _EPHEMERAL_HIGH)

        return PacketRecord(
            timestamp_ms=time.time() * 1_000,
            source_address=source,
            dest_address=dest,
            protocol=transport,
            byte_length=self._rng.randint(MIN_BYTES, MAX_BYTES),
            source_port=source_port,
            dest_port=dest_port,
        )

    def _on_tick(self) -> None:
        sink = self._sink
        if sink is None:
            return
        try:
            sink.on_packet_record(self.generate_record())
        except Exception:
            logger.exception("Record sink raised while handling synthetic traffic")


__all__ = ["APPLICATION_PROTOCOLS", "DEFAULT_ADDRESSES", "SyntheticTrafficSource"]
