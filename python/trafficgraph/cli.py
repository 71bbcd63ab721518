"""Command-line entry point: live graph server and offline PCAP summaries."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .aggregator import GraphSnapshot, TrafficAggregator
from .config import CaptureOptions, ServerConfig, default_port
from .decoder import DEFAULT_MAX_BUFFER_BYTES
from .packet_reader import PacketReader

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class SummaryStats:
    frames_read: int = 0
    frames_skipped: int = 0
    records_folded: int = 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trafficgraph",
        description="Aggregate captured traffic into a live host/stream graph.",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="INFO",
        help="Log level for diagnostic output.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the WebSocket graph server.")
    serve.add_argument("--host", default="0.0.0.0", help="Address to listen on (default: 0.0.0.0).")
    serve.add_argument(
        "--port",
        type=int,
        default=default_port(),
        help="Port to listen on (default: $PORT or 3002).",
    )
    serve.add_argument("--tshark", default="tshark", metavar="PATH", help="tshark executable.")
    serve.add_argument(
        "--sudo",
        action="store_true",
        help="Run tshark through sudo for capture privileges.",
    )
    serve.add_argument(
        "--capture-filter",
        default="ip",
        metavar="BPF",
        help="Capture filter passed to tshark (default: ip). Use '' to disable.",
    )
    serve.add_argument(
        "--synthetic-interval",
        type=float,
        default=0.5,
        metavar="SECONDS",
        help="Period of the synthetic 'test' traffic source (default: 0.5).",
    )
    serve.add_argument(
        "--max-buffer",
        type=int,
        default=DEFAULT_MAX_BUFFER_BYTES,
        metavar="BYTES",
        help="Decoder buffer ceiling before partial output is discarded.",
    )

    summarize = commands.add_parser(
        "summarize",
        help="Fold a PCAP capture into a graph snapshot written as JSON.",
    )
    summarize.add_argument("pcap_path", type=Path, help="Path to a PCAP or PCAPNG file.")
    summarize.add_argument(
        "--output",
        type=Path,
        metavar="FILE",
        help="Write the snapshot to FILE instead of stdout.",
    )
    summarize.add_argument(
        "--ipv6",
        action="store_true",
        help="Enable IPv6 packet parsing (disabled by default).",
    )
    summarize.add_argument(
        "--no-ipv4",
        action="store_true",
        help="Disable IPv4 packet parsing (enabled by default).",
    )
    return parser


def summarize_pcap(
    pcap_file: Path,
    *,
    read_ip4: bool = True,
    read_ip6: bool = False,
) -> Tuple[GraphSnapshot, SummaryStats]:
    stats = SummaryStats()
    aggregator = TrafficAggregator()

    with PacketReader(pcap_file, read_ip4=read_ip4, read_ip6=read_ip6) as reader:
        for record in reader:
            aggregator.fold(record)
            stats.records_folded += 1
        stats.frames_read = reader.frames_read
        stats.frames_skipped = reader.frames_skipped

    return aggregator.snapshot(), stats


def run_summarize(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.no_ipv4 and not args.ipv6:
        parser.error("At least one of IPv4 or IPv6 processing must be enabled.")

    try:
        snapshot, stats = summarize_pcap(
            args.pcap_path,
            read_ip4=not args.no_ipv4,
            read_ip6=args.ipv6,
        )
    except (FileNotFoundError, RuntimeError) as exc:
        logger.error(str(exc))
        return 1

    document = json.dumps(snapshot.to_dict(), indent=2)
    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(document + "\n", encoding="utf-8")
    else:
        sys.stdout.write(document + "\n")

    logger.info(
        "Finished %s: frames=%d, packets=%d, hosts=%d, streams=%d",
        args.pcap_path.name,
        stats.frames_read,
        stats.records_folded,
        len(snapshot.hosts),
        len(snapshot.streams),
    )
    return 0


def server_config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        host=args.host,
        port=args.port,
        synthetic_interval_ms=max(int(args.synthetic_interval * 1_000), 1),
        capture=CaptureOptions(
            tshark_path=args.tshark,
            use_sudo=args.sudo,
            capture_filter=args.capture_filter or None,
            max_buffer_bytes=args.max_buffer,
        ),
    )


def run_serve(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.synthetic_interval <= 0:
        parser.error("--synthetic-interval must be greater than 0 seconds.")
    if args.max_buffer <= 0:
        parser.error("--max-buffer must be greater than 0 bytes.")

    from PySide6.QtCore import QCoreApplication, QTimer

    from .server import ServerError, TrafficGraphServer

    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([sys.argv[0]])
    app.setApplicationName("trafficgraph")

    server = TrafficGraphServer(server_config_from_args(args))
    try:
        server.listen()
    except ServerError as exc:
        logger.error(str(exc))
        return 1

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s", signum)
        app.quit()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    # Wake the interpreter periodically so Python signal handlers can run.
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(250)

    try:
        return app.exec()
    finally:
        heartbeat.stop()
        server.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level))

    if args.command == "summarize":
        return run_summarize(args, parser)
    return run_serve(args, parser)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
