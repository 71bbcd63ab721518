"""Folds packet records into a per-session host/stream graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from .id_generator import IdGenerator
from .packet_record import PacketRecord, TransportProtocol

logger = logging.getLogger(__name__)

StreamKey = Tuple[str, str, TransportProtocol]


@dataclass
class Host:
    """Aggregate counters for one observed address."""

    id: str
    address: str
    packet_count: int = 0
    bytes_transferred: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.address,
            "packets": self.packet_count,
            "bytesTransferred": self.bytes_transferred,
        }


@dataclass
class Stream:
    """Directed, protocol-scoped traffic between two hosts."""

    source_host_id: str
    target_host_id: str
    protocol: TransportProtocol
    packet_count: int = 0
    byte_count: int = 0
    last_seen_timestamp_ms: float = 0.0

    @property
    def key(self) -> StreamKey:
        return (self.source_host_id, self.target_host_id, self.protocol)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source_host_id,
            "target": self.target_host_id,
            "protocol": self.protocol.value,
            "packets": self.packet_count,
            "bytes": self.byte_count,
            "timestamp": self.last_seen_timestamp_ms,
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Point-in-time copy of an aggregator's hosts and streams."""

    hosts: Tuple[Host, ...] = ()
    streams: Tuple[Stream, ...] = ()

    def host_by_address(self, address: str) -> Optional[Host]:
        for host in self.hosts:
            if host.address == address:
                return host
        return None

    def stream(
        self,
        source_host_id: str,
        target_host_id: str,
        protocol: TransportProtocol,
    ) -> Optional[Stream]:
        key = (source_host_id, target_host_id, TransportProtocol.normalize(protocol))
        for stream in self.streams:
            if stream.key == key:
                return stream
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hosts": [host.to_dict() for host in self.hosts],
            "streams": [stream.to_dict() for stream in self.streams],
        }


class TrafficAggregator:
    """Owns the host and stream tables of a single session.

    Hosts are keyed by address and numbered in order of first appearance;
    streams are keyed by ``(source id, target id, protocol)``. Nothing is
    ever evicted, so both tables only grow for the lifetime of the session.
    """

    def __init__(self) -> None:
        self._ids = IdGenerator()
        self._hosts: Dict[str, Host] = {}
        self._streams: Dict[StreamKey, Stream] = {}

    # ------------------------------------------------------------------
    @property
    def host_count(self) -> int:
        return len(self._hosts)

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    def fold(self, record: PacketRecord) -> GraphSnapshot:
        """Apply one packet to the graph and return the resulting snapshot."""
        protocol = TransportProtocol.normalize(record.protocol)
        length = record.byte_length

        src_host = self._get_or_create_host(record.source_address)
        dst_host = self._get_or_create_host(record.dest_address)

        # Both endpoints carry the load; a self-addressed packet counts once.
        for host in {src_host.id: src_host, dst_host.id: dst_host}.values():
            host.packet_count += 1
            host.bytes_transferred += length

        key: StreamKey = (src_host.id, dst_host.id, protocol)
        stream = self._streams.get(key)
        if stream is None:
            stream = Stream(
                source_host_id=src_host.id,
                target_host_id=dst_host.id,
                protocol=protocol,
                last_seen_timestamp_ms=record.timestamp_ms,
            )
            self._streams[key] = stream
            logger.debug(
                "New stream %s -> %s (%s)",
                record.source_address,
                record.dest_address,
                protocol.value,
            )

        stream.packet_count += 1
        stream.byte_count += length
        stream.last_seen_timestamp_ms = record.timestamp_ms

        return self.snapshot()

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            hosts=tuple(replace(host) for host in self._hosts.values()),
            streams=tuple(replace(stream) for stream in self._streams.values()),
        )

    # ------------------------------------------------------------------
    def _get_or_create_host(self, address: str) -> Host:
        host = self._hosts.get(address)
        if host is None:
            host = Host(id=self._ids.next_id(), address=address)
            self._hosts[address] = host
        return host


__all__ = ["GraphSnapshot", "Host", "Stream", "StreamKey", "TrafficAggregator"]
