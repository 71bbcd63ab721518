"""PCAP ingestion producing the same PacketRecords as live capture."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Iterator, Optional, Tuple, Union

import dpkt
from dpkt.ethernet import VLANtag8021Q

from .packet_record import PacketRecord, TransportProtocol
from .utils import format_ip

logger = logging.getLogger(__name__)

MILLIS_PER_SECOND = 1_000
_RAW_LINKTYPES = (dpkt.pcap.DLT_RAW, 101)


class PacketReader:
    """Iterates over PacketRecord instances decoded from a PCAP capture."""

    def __init__(
        self,
        pcap_path: Union[str, Path],
        *,
        read_ip4: bool = True,
        read_ip6: bool = False,
    ) -> None:
        path = Path(pcap_path)
        if not path.is_file():
            raise FileNotFoundError(f"PCAP file does not exist: {path}")
        if not read_ip4 and not read_ip6:
            raise ValueError("At least one of read_ip4 or read_ip6 must be enabled")

        self.path = path
        self.read_ip4 = read_ip4
        self.read_ip6 = read_ip6

        self._file: Optional[IO[bytes]] = None
        self._pcap: Optional[Union[dpkt.pcap.Reader, dpkt.pcapng.Reader]] = None
        self._packet_iter: Optional[Iterator[Tuple[float, bytes]]] = None
        self._datalink = dpkt.pcap.DLT_EN10MB

        self.frames_read = 0
        self.frames_skipped = 0

    # ------------------------------------------------------------------
    def __enter__(self) -> "PacketReader":
        self._open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def close(self) -> None:
        self._pcap = None
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                logger.debug("Failed to close PCAP file", exc_info=True)
            finally:
                self._file = None
        self._packet_iter = None

    # ------------------------------------------------------------------
    def __iter__(self) -> Iterator[PacketRecord]:
        while True:
            record = self.next_record()
            if record is None:
                break
            yield record

    def next_record(self) -> Optional[PacketRecord]:
        self._ensure_iter()
        assert self._packet_iter is not None

        for ts, buf in self._packet_iter:
            self.frames_read += 1
            record = self._decode_frame(ts, buf)
            if record is not None:
                return record
            self.frames_skipped += 1
        return None

    # ------------------------------------------------------------------
    def _ensure_iter(self) -> None:
        if self._pcap is None or self._packet_iter is None:
            self._open()
            assert self._pcap is not None
            self._packet_iter = iter(self._pcap)

    def _open(self) -> None:
        if self._pcap is not None:
            return
        try:
            self._file = self.path.open("rb")
            if self.path.suffix.lower() == ".pcapng":
                self._pcap = dpkt.pcapng.Reader(self._file)
            else:
                self._pcap = dpkt.pcap.Reader(self._file)
        except (OSError, ValueError, KeyError, dpkt.dpkt.NeedData) as exc:
            self.close()
            raise RuntimeError(f"Failed to open PCAP file: {self.path}") from exc
        self._datalink = self._pcap.datalink()

    # ------------------------------------------------------------------
    def _decode_frame(self, timestamp: float, frame: bytes) -> Optional[PacketRecord]:
        try:
            payload = self._network_layer(frame)
        except (dpkt.UnpackError, ValueError):
            logger.debug("Skipping undecodable frame", exc_info=True)
            return None

        if isinstance(payload, dpkt.ip.IP):
            if not self.read_ip4:
                return None
            return self._build_record(timestamp, payload.src, payload.dst, payload.len, payload.data)
        if isinstance(payload, dpkt.ip6.IP6):
            if not self.read_ip6:
                return None
            return self._build_record(timestamp, payload.src, payload.dst, payload.plen, payload.data)
        return None

    def _network_layer(self, frame: bytes):
        if self._datalink == dpkt.pcap.DLT_LINUX_SLL:
            return dpkt.sll.SLL(frame).data
        if self._datalink in _RAW_LINKTYPES:
            version = frame[0] >> 4 if frame else 0
            if version == 4:
                return dpkt.ip.IP(frame)
            if version == 6:
                return dpkt.ip6.IP6(frame)
            return None

        payload = dpkt.ethernet.Ethernet(frame).data
        if isinstance(payload, VLANtag8021Q):
            payload = payload.data
        return payload

    def _build_record(
        self,
        timestamp: float,
        src: bytes,
        dst: bytes,
        length: int,
        transport,
    ) -> PacketRecord:
        source_port: Optional[int] = None
        dest_port: Optional[int] = None
        if isinstance(transport, dpkt.tcp.TCP):
            protocol = TransportProtocol.TCP
        elif isinstance(transport, dpkt.udp.UDP):
            protocol = TransportProtocol.UDP
        else:
            protocol = TransportProtocol.OTHER
        if protocol is not TransportProtocol.OTHER:
            source_port = int(transport.sport)
            dest_port = int(transport.dport)

        return PacketRecord(
            timestamp_ms=timestamp * MILLIS_PER_SECOND,
            source_address=format_ip(src),
            dest_address=format_ip(dst),
            protocol=protocol,
            byte_length=max(int(length), 0),
            source_port=source_port,
            dest_port=dest_port,
        )


__all__ = ["PacketReader"]
