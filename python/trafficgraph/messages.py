"""JSON message envelope exchanged with viewers and routing of client commands."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .interfaces import ANY_INTERFACE, CaptureInterface, list_interfaces
from .session import Session

logger = logging.getLogger(__name__)

START_CAPTURE = "startCapture"
STOP_TEST_TRAFFIC = "stopTestTraffic"
STOP_CAPTURE = "stopCapture"
HEALTH = "health"
LIST_INTERFACES = "listInterfaces"
INTERFACES = "interfaces"
ERROR = "error"

HEALTH_PAYLOAD: Mapping[str, str] = {"status": "ok"}

Reply = Tuple[str, Mapping[str, Any]]
InterfaceProvider = Callable[[], List[CaptureInterface]]


class MessageError(ValueError):
    """Raised for text frames that are not a valid message envelope."""


def encode_message(event: str, payload: Any) -> str:
    return json.dumps({"event": event, "data": payload}, separators=(",", ":"))


def decode_message(text: str) -> Tuple[str, Any]:
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise MessageError(f"Message is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise MessageError("Message must be a JSON object")
    event = document.get("event")
    if not isinstance(event, str) or not event:
        raise MessageError("Message has no event name")
    return event, document.get("data")


def health_payload() -> Dict[str, str]:
    return dict(HEALTH_PAYLOAD)


def handle_client_message(
    session: Session,
    text: str,
    *,
    interface_provider: InterfaceProvider = list_interfaces,
) -> Optional[Reply]:
    """Apply one client message to ``session``; returns a direct reply, if any."""
    try:
        event, data = decode_message(text)
    except MessageError as exc:
        logger.warning("Session %s sent an invalid message: %s", session.session_id, exc)
        return ERROR, {"message": str(exc)}

    if event == START_CAPTURE:
        target = _capture_target(data)
        if session.active_source is not None:
            return ERROR, {"message": "Capture already running"}
        # Spawn failures are published through the channel by the session.
        session.start_capture(target)
        return None

    if event == STOP_TEST_TRAFFIC:
        session.stop_test_traffic()
        return None

    if event == STOP_CAPTURE:
        session.stop()
        return None

    if event == HEALTH:
        return HEALTH, health_payload()

    if event == LIST_INTERFACES:
        interfaces = [iface.to_dict() for iface in interface_provider()]
        return INTERFACES, {"interfaces": interfaces}

    logger.warning("Session %s sent unknown event %r", session.session_id, event)
    return None


def _capture_target(data: Any) -> str:
    if isinstance(data, Mapping):
        data = data.get("interface")
    if isinstance(data, str) and data.strip():
        return data.strip()
    return ANY_INTERFACE


__all__ = [
    "ERROR",
    "HEALTH",
    "HEALTH_PAYLOAD",
    "INTERFACES",
    "LIST_INTERFACES",
    "MessageError",
    "START_CAPTURE",
    "STOP_CAPTURE",
    "STOP_TEST_TRAFFIC",
    "decode_message",
    "encode_message",
    "handle_client_message",
    "health_payload",
]
