"""Small helpers shared by the capture readers."""

from __future__ import annotations

import ipaddress
from typing import Union


def format_ip(value: Union[bytes, bytearray, str]) -> str:
    """Render a packed IPv4/IPv6 address the way tshark prints it."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) == 4:
            return str(ipaddress.IPv4Address(bytes(value)))
        if len(value) == 16:
            return str(ipaddress.IPv6Address(bytes(value)))
        return bytes(value).hex()
    return str(value)


__all__ = ["format_ip"]
