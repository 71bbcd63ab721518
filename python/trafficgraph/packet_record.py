"""Normalized packet records shared by every traffic source."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransportProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    OTHER = "OTHER"

    @classmethod
    def normalize(cls, value: object) -> "TransportProtocol":
        """Map any protocol label onto the known families, defaulting to OTHER."""
        if isinstance(value, TransportProtocol):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class PacketRecord:
    """One decoded unit of capture output.

    Only the fields the graph needs are kept: addresses, transport family
    and the IP length. Ports are carried for diagnostics but never folded.
    """

    timestamp_ms: float
    source_address: str
    dest_address: str
    protocol: TransportProtocol
    byte_length: int
    source_port: Optional[int] = None
    dest_port: Optional[int] = None

    def __post_init__(self) -> None:
        if self.byte_length < 0:
            raise ValueError(f"byte_length must be >= 0, got {self.byte_length}")
        object.__setattr__(self, "protocol", TransportProtocol.normalize(self.protocol))


__all__ = ["PacketRecord", "TransportProtocol"]
