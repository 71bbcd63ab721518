"""Live capture-to-graph aggregation and streaming for network traffic viewers.

The Qt-backed pieces (``session``, ``synthetic``, ``capture_process`` and
``server``) are imported from their modules so offline use stays headless.
"""

from .packet_record import PacketRecord, TransportProtocol
from .id_generator import IdGenerator
from .decoder import DecodeError, StreamDecoder, record_from_tshark
from .aggregator import GraphSnapshot, Host, Stream, TrafficAggregator
from .broadcast import BroadcastChannel
from .config import CaptureOptions, ServerConfig, SYNTHETIC_TARGET
from .supervisor import CaptureError, CaptureState, CaptureSupervisor
from .packet_reader import PacketReader
from .interfaces import CaptureInterface, list_interfaces

__all__ = [
    "PacketRecord",
    "TransportProtocol",
    "IdGenerator",
    "DecodeError",
    "StreamDecoder",
    "record_from_tshark",
    "GraphSnapshot",
    "Host",
    "Stream",
    "TrafficAggregator",
    "BroadcastChannel",
    "CaptureOptions",
    "ServerConfig",
    "SYNTHETIC_TARGET",
    "CaptureError",
    "CaptureState",
    "CaptureSupervisor",
    "PacketReader",
    "CaptureInterface",
    "list_interfaces",
]
