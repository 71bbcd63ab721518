"""Enumeration of local interfaces a viewer can choose as capture target."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psutil

logger = logging.getLogger(__name__)

ANY_INTERFACE = "any"


@dataclass(frozen=True)
class CaptureInterface:
    name: str
    addresses: Tuple[str, ...] = ()
    hardware_address: Optional[str] = None
    is_loopback: bool = False
    is_up: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "addresses": list(self.addresses),
            "hardwareAddress": self.hardware_address,
            "loopback": self.is_loopback,
            "up": self.is_up,
        }


def list_interfaces(*, include_loopback: bool = True) -> List[CaptureInterface]:
    """Return the host's interfaces sorted by name."""
    interfaces: List[CaptureInterface] = []

    try:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except (OSError, RuntimeError):  # pragma: no cover - platform dependent
        logger.debug("Failed to enumerate interfaces via psutil", exc_info=True)
        addrs, stats = {}, {}

    for name, entries in addrs.items():
        ip_addrs: List[str] = []
        hardware: Optional[str] = None
        for entry in entries:
            family = getattr(entry, "family", None)
            address = getattr(entry, "address", "")
            if not address:
                continue
            if family in _link_families():
                hardware = address
            elif family in (socket.AF_INET, socket.AF_INET6):
                ip_addrs.append(address)

        is_loop = _is_loopback(name, ip_addrs)
        if is_loop and not include_loopback:
            continue
        stat = stats.get(name)
        interfaces.append(
            CaptureInterface(
                name=name,
                addresses=tuple(ip_addrs),
                hardware_address=hardware,
                is_loopback=is_loop,
                is_up=bool(getattr(stat, "isup", True)),
            )
        )

    if not interfaces:
        try:
            for _, name in socket.if_nameindex():
                is_loop = _is_loopback(name, ())
                if is_loop and not include_loopback:
                    continue
                interfaces.append(CaptureInterface(name=name, is_loopback=is_loop))
        except OSError:  # pragma: no cover - platform dependent
            logger.debug("socket.if_nameindex() failed", exc_info=True)

    interfaces.sort(key=lambda iface: iface.name)
    return interfaces


def _link_families() -> Tuple[int, ...]:
    families = [psutil.AF_LINK]
    if hasattr(socket, "AF_PACKET"):
        families.append(socket.AF_PACKET)
    return tuple(families)


def _is_loopback(name: str, addresses: Sequence[str]) -> bool:
    if any(addr.startswith("127.") or addr in {"::1", "0:0:0:0:0:0:0:1"} for addr in addresses):
        return True
    return name.lower().startswith(("lo", "loopback"))


__all__ = ["ANY_INTERFACE", "CaptureInterface", "list_interfaces"]
