"""Binds one viewer connection to one traffic source and one aggregator."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .aggregator import GraphSnapshot, TrafficAggregator
from .broadcast import BroadcastChannel
from .config import SYNTHETIC_TARGET, ServerConfig
from .listeners import Subscriber
from .packet_record import PacketRecord
from .supervisor import CaptureState, CaptureSupervisor, ProcessFactory
from .synthetic import SyntheticTrafficSource

logger = logging.getLogger(__name__)

SyntheticFactory = Callable[[], SyntheticTrafficSource]

CAPTURE_SOURCE = "capture"
SYNTHETIC_SOURCE = "synthetic"


class Session:
    """Per-connection pipeline: source -> aggregator -> broadcast channel.

    At most one source is active at a time. Each start gets a fresh
    aggregator, so graphs are never shared between sessions or carried over
    from a stopped capture.
    """

    def __init__(
        self,
        session_id: str,
        channel: BroadcastChannel,
        subscriber: Subscriber,
        *,
        process_factory: ProcessFactory,
        config: Optional[ServerConfig] = None,
        synthetic_factory: Optional[SyntheticFactory] = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or ServerConfig()
        self._channel = channel
        self._subscriber = subscriber
        self._process_factory = process_factory
        self._synthetic_factory = synthetic_factory or self._default_synthetic

        self._aggregator: Optional[TrafficAggregator] = None
        self._supervisor: Optional[CaptureSupervisor] = None
        self._synthetic: Optional[SyntheticTrafficSource] = None
        self._closed = False

        channel.subscribe(session_id, subscriber)

    # ------------------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_source(self) -> Optional[str]:
        if self._synthetic is not None and self._synthetic.is_running():
            return SYNTHETIC_SOURCE
        if self._supervisor is not None and self._supervisor.is_running():
            return CAPTURE_SOURCE
        return None

    @property
    def capture_state(self) -> CaptureState:
        if self._supervisor is None:
            return CaptureState.IDLE
        return self._supervisor.state

    @property
    def supervisor(self) -> Optional[CaptureSupervisor]:
        return self._supervisor

    def snapshot(self) -> GraphSnapshot:
        if self._aggregator is None:
            return GraphSnapshot()
        return self._aggregator.snapshot()

    # ------------------------------------------------------------------
    def start_capture(self, target: str) -> bool:
        """Start the synthetic source for ``"test"``, else a capture on ``target``."""
        if self._closed:
            logger.warning("Session %s is closed; ignoring start", self.session_id)
            return False
        if self.active_source is not None:
            logger.warning(
                "Session %s already has an active %s source",
                self.session_id,
                self.active_source,
            )
            return False

        self._release_sources()
        self._aggregator = TrafficAggregator()

        if target == SYNTHETIC_TARGET:
            synthetic = self._synthetic_factory()
            self._synthetic = synthetic
            synthetic.start(self)
            logger.info("Session %s: synthetic traffic", self.session_id)
            return True

        logger.info("Session %s: starting capture on %s", self.session_id, target)
        self._supervisor = CaptureSupervisor(
            self,
            self._process_factory,
            options=self.config.capture,
        )
        return self._supervisor.start(target)

    def stop_test_traffic(self) -> None:
        """Stop the synthetic source if, and only if, it is the active one."""
        if self.active_source != SYNTHETIC_SOURCE:
            return
        self._release_sources()

    def stop(self) -> None:
        """Tear down whichever source is active. Idempotent."""
        self._release_sources()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release_sources()
        self._channel.unsubscribe(self.session_id, self._subscriber)
        logger.info("Session %s closed", self.session_id)

    # ------------------------------------------------------------------
    def on_packet_record(self, record: PacketRecord) -> None:
        aggregator = self._aggregator
        if aggregator is None:
            return
        self._channel.publish(self.session_id, aggregator.fold(record))

    def on_source_error(self, message: str) -> None:
        self._channel.publish_error(self.session_id, message)

    # ------------------------------------------------------------------
    def _release_sources(self) -> None:
        if self._synthetic is not None:
            self._synthetic.stop()
            self._synthetic = None
        if self._supervisor is not None:
            self._supervisor.stop()
            self._supervisor = None
        self._aggregator = None

    def _default_synthetic(self) -> SyntheticTrafficSource:
        return SyntheticTrafficSource(interval_ms=self.config.synthetic_interval_ms)


__all__ = ["CAPTURE_SOURCE", "SYNTHETIC_SOURCE", "Session", "SyntheticFactory"]
