"""Option objects shared by the server and the capture supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .decoder import DEFAULT_MAX_BUFFER_BYTES

DEFAULT_PORT = 3002
SYNTHETIC_TARGET = "test"


def default_port() -> int:
    value = os.environ.get("PORT")
    if not value:
        return DEFAULT_PORT
    try:
        return int(value)
    except ValueError:
        return DEFAULT_PORT


@dataclass
class CaptureOptions:
    tshark_path: str = "tshark"
    use_sudo: bool = False
    capture_filter: Optional[str] = "ip"
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES
    terminate_grace_ms: int = 2_000
    max_consecutive_decode_errors: int = 100

    def command(self, interface: str) -> Tuple[str, List[str]]:
        """Program and arguments for a line-buffered JSON capture on ``interface``."""
        arguments = [self.tshark_path, "-i", interface, "-T", "json", "-l"]
        if self.capture_filter:
            arguments.extend(["-f", self.capture_filter])
        if self.use_sudo:
            return "sudo", arguments
        return arguments[0], arguments[1:]


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = field(default_factory=default_port)
    synthetic_interval_ms: int = 500
    max_pending_bytes: int = 1_048_576
    capture: CaptureOptions = field(default_factory=CaptureOptions)


__all__ = [
    "CaptureOptions",
    "DEFAULT_PORT",
    "SYNTHETIC_TARGET",
    "ServerConfig",
    "default_port",
]
