from __future__ import annotations

import json
import socket
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import dpkt
import pytest

from trafficgraph.packet_record import PacketRecord


def tshark_packet(
    src: str,
    dst: str,
    length: int,
    *,
    epoch: str = "1700000000.250000000",
    transport: Optional[str] = "tcp",
    ipv6: bool = False,
) -> Dict[str, Any]:
    """Build one element of ``tshark -T json`` output."""
    layers: Dict[str, Any] = {
        "frame": {"frame.time_epoch": epoch, "frame.len": str(length + 14)},
        "eth": {"eth.src": "aa:aa:aa:aa:aa:aa", "eth.dst": "bb:bb:bb:bb:bb:bb"},
    }
    if ipv6:
        layers["ipv6"] = {"ipv6.src": src, "ipv6.dst": dst, "ipv6.plen": str(length)}
    else:
        layers["ip"] = {"ip.src": src, "ip.dst": dst, "ip.proto": "6", "ip.len": str(length)}
    if transport == "tcp":
        layers["tcp"] = {"tcp.srcport": "44321", "tcp.dstport": "80", "tcp.flags_tree": {"tcp.flags.syn": "1"}}
    elif transport == "udp":
        layers["udp"] = {"udp.srcport": "5353", "udp.dstport": "53"}
    elif transport == "icmp":
        layers["icmp"] = {"icmp.type": "8"}
    return {"_index": "packets-2023-11-14", "_type": "doc", "_score": None, "_source": {"layers": layers}}


def tshark_output(*packets: Mapping[str, Any]) -> bytes:
    """Render packets the way ``tshark -T json -l`` streams them."""
    body = ",\n".join(json.dumps(packet, indent=2) for packet in packets)
    return ("[\n" + body + "\n]\n").encode("utf-8")


def record(
    timestamp_ms: float,
    src: str,
    dst: str,
    protocol: str,
    length: int,
) -> PacketRecord:
    return PacketRecord(
        timestamp_ms=timestamp_ms,
        source_address=src,
        dest_address=dst,
        protocol=protocol,
        byte_length=length,
    )


def ipv4_frame(src: str, dst: str, transport, *, proto: int) -> bytes:
    """Ethernet/IPv4 frame with an explicit total length."""
    body = bytes(transport)
    ip = dpkt.ip.IP(
        src=socket.inet_aton(src),
        dst=socket.inet_aton(dst),
        p=proto,
        ttl=64,
        len=20 + len(body),
    )
    ip.data = transport
    return bytes(
        dpkt.ethernet.Ethernet(
            src=b"\xaa\xaa\xaa\xaa\xaa\xaa",
            dst=b"\xbb\xbb\xbb\xbb\xbb\xbb",
            type=dpkt.ethernet.ETH_TYPE_IP,
            data=ip,
        )
    )


def ipv6_frame(src: str, dst: str, transport, *, proto: int) -> bytes:
    body = bytes(transport)
    ip6 = dpkt.ip6.IP6(
        src=socket.inet_pton(socket.AF_INET6, src),
        dst=socket.inet_pton(socket.AF_INET6, dst),
        nxt=proto,
        hlim=64,
        plen=len(body),
    )
    ip6.data = transport
    return bytes(
        dpkt.ethernet.Ethernet(
            src=b"\xcc\xcc\xcc\xcc\xcc\xcc",
            dst=b"\xdd\xdd\xdd\xdd\xdd\xdd",
            type=dpkt.ethernet.ETH_TYPE_IP6,
            data=ip6,
        )
    )


def write_pcap(path, frames: Sequence[Tuple[float, bytes]]) -> None:
    with path.open("wb") as fh:
        writer = dpkt.pcap.Writer(fh)
        for ts, frame in frames:
            writer.writepkt(frame, ts=ts)
        writer.close()


class RecordingSink:
    def __init__(self) -> None:
        self.records: List[PacketRecord] = []
        self.errors: List[str] = []

    def on_packet_record(self, record: PacketRecord) -> None:
        self.records.append(record)

    def on_source_error(self, message: str) -> None:
        self.errors.append(message)


class RecordingSubscriber:
    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.messages: List[Tuple[str, Mapping[str, Any]]] = []

    def send(self, event: str, payload: Mapping[str, Any]) -> bool:
        if not self.accept:
            return False
        self.messages.append((event, payload))
        return True

    def events(self, name: str) -> List[Mapping[str, Any]]:
        return [payload for event, payload in self.messages if event == name]


class FakeProcess:
    """Stands in for QtCaptureProcess; tests drive events through ``handler``."""

    def __init__(self, handler, *, fail_on_start: bool = False) -> None:
        self.handler = handler
        self.fail_on_start = fail_on_start
        self.program: Optional[str] = None
        self.arguments: Sequence[str] = ()
        self.running = False
        self.terminate_calls = 0

    def start(self, program: str, arguments: Sequence[str]) -> None:
        self.program = program
        self.arguments = list(arguments)
        if self.fail_on_start:
            raise OSError("No such file or directory")
        self.running = True

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.running = False

    def is_running(self) -> bool:
        return self.running


class FakeProcessFactory:
    def __init__(self, *, fail_on_start: bool = False) -> None:
        self.fail_on_start = fail_on_start
        self.processes: List[FakeProcess] = []

    def __call__(self, handler) -> FakeProcess:
        process = FakeProcess(handler, fail_on_start=self.fail_on_start)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture(scope="session")
def qapp():
    QtCore = pytest.importorskip("PySide6.QtCore")
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    return app


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


def wait_until(app, predicate, timeout_ms: int = 5_000) -> bool:
    """Spin the Qt event loop until ``predicate`` holds or the timeout expires."""
    from PySide6.QtCore import QElapsedTimer

    clock = QElapsedTimer()
    clock.start()
    while not predicate() and clock.elapsed() < timeout_ms:
        app.processEvents()
    return predicate()
