"""Incremental decoder turning ``tshark -T json`` output into packet records."""

from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, Mapping, Optional

from .packet_record import PacketRecord, TransportProtocol

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_BYTES = 1_000_000
MILLIS_PER_SECOND = 1_000

_OPEN_BRACE = ord("{")
_CLOSE_BRACE = ord("}")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


class DecodeError(ValueError):
    """Raised for a complete capture record that cannot be turned into a PacketRecord."""


class StreamDecoder:
    """Reassembles JSON packet objects from arbitrarily chunked pipe output.

    ``tshark -T json`` writes one pretty-printed array whose elements are the
    packets. Chunks from the pipe do not respect object boundaries, so the
    decoder tracks brace depth (ignoring braces inside strings) and extracts
    every complete top-level object as soon as its closing brace arrives.
    Array framing between objects is skipped. A chunk carrying several
    complete packets yields all of them, in order.
    """

    def __init__(
        self,
        *,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        error_handler: Optional[Callable[[DecodeError], None]] = None,
    ) -> None:
        if max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be positive")
        self.max_buffer_bytes = max_buffer_bytes
        self.error_handler = error_handler

        self.records_decoded = 0
        self.decode_errors = 0
        self.overflow_resets = 0

        self._buffer = bytearray()
        self._reset_scanner()

    # ------------------------------------------------------------------
    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        """Drop any partially received record."""
        self._buffer.clear()
        self._reset_scanner()

    def feed(self, chunk: bytes) -> List[PacketRecord]:
        """Consume a chunk and return every record it completed."""
        return list(self.decode(chunk))

    def decode(self, chunk: bytes) -> Iterator[PacketRecord]:
        """Consume a chunk, yielding each record as soon as it is extracted.

        Decode errors for later objects in the chunk are reported only after
        the consumer has handled every record before them.
        """
        if not chunk:
            return

        self._buffer.extend(chunk)
        yield from self._scan()

        if len(self._buffer) > self.max_buffer_bytes:
            logger.warning(
                "Discarding %d buffered capture bytes without a complete record",
                len(self._buffer),
            )
            self.overflow_resets += 1
            self.reset()

    # ------------------------------------------------------------------
    def _reset_scanner(self) -> None:
        self._scan_pos = 0
        self._start = -1
        self._depth = 0
        self._in_string = False
        self._escape = False

    def _scan(self) -> Iterator[PacketRecord]:
        buf = self._buffer
        index = self._scan_pos

        try:
            while index < len(buf):
                byte = buf[index]
                index += 1
                if self._start < 0:
                    if byte == _OPEN_BRACE:
                        self._start = index - 1
                        self._depth = 1
                elif self._in_string:
                    if self._escape:
                        self._escape = False
                    elif byte == _BACKSLASH:
                        self._escape = True
                    elif byte == _QUOTE:
                        self._in_string = False
                elif byte == _QUOTE:
                    self._in_string = True
                elif byte == _OPEN_BRACE:
                    self._depth += 1
                elif byte == _CLOSE_BRACE:
                    self._depth -= 1
                    if self._depth == 0:
                        raw = bytes(buf[self._start:index])
                        self._start = -1
                        record = self._decode_object(raw)
                        if record is not None:
                            yield record
        finally:
            self._compact(index)

    def _compact(self, index: int) -> None:
        # Keep only the unfinished object and any bytes not scanned yet.
        buf = self._buffer
        if self._start < 0:
            del buf[:index]
            self._scan_pos = 0
        else:
            del buf[:self._start]
            self._scan_pos = index - self._start
            self._start = 0

    def _decode_object(self, raw: bytes) -> Optional[PacketRecord]:
        try:
            document = json.loads(raw)
            record = record_from_tshark(document)
        except DecodeError as exc:
            self._report_error(exc)
            return None
        except ValueError as exc:
            self._report_error(DecodeError(f"Malformed capture record: {exc}"))
            return None
        except RecursionError:
            self._report_error(DecodeError("Capture record is nested too deeply"))
            return None

        self.records_decoded += 1
        return record

    def _report_error(self, error: DecodeError) -> None:
        self.decode_errors += 1
        logger.debug("Skipping capture record: %s", error)
        if self.error_handler is not None:
            try:
                self.error_handler(error)
            except Exception:  # pragma: no cover - user supplied handler
                logger.exception("Decode error handler raised an exception")


# ----------------------------------------------------------------------
def record_from_tshark(document: Any) -> PacketRecord:
    """Build a PacketRecord from one element of ``tshark -T json`` output."""
    if not isinstance(document, Mapping):
        raise DecodeError("Capture record is not a JSON object")

    source = document.get("_source")
    layers = source.get("layers") if isinstance(source, Mapping) else None
    if not isinstance(layers, Mapping):
        raise DecodeError("Capture record has no _source.layers")

    frame = _first(layers.get("frame")) or {}
    timestamp_ms = _parse_epoch_ms(frame.get("frame.time_epoch"))

    ip = _first(layers.get("ip"))
    if ip is not None:
        src = ip.get("ip.src")
        dst = ip.get("ip.dst")
        length = _parse_int(ip.get("ip.len"), "ip.len")
    else:
        ip6 = _first(layers.get("ipv6"))
        if ip6 is None:
            raise DecodeError("Capture record has no IP layer")
        src = ip6.get("ipv6.src")
        dst = ip6.get("ipv6.dst")
        length = _parse_int(ip6.get("ipv6.plen"), "ipv6.plen")

    if not isinstance(src, str) or not isinstance(dst, str) or not src or not dst:
        raise DecodeError("Capture record is missing source or destination address")

    source_port: Optional[int] = None
    dest_port: Optional[int] = None
    if "tcp" in layers:
        protocol = TransportProtocol.TCP
        tcp = _first(layers.get("tcp")) or {}
        source_port = _optional_int(tcp.get("tcp.srcport"))
        dest_port = _optional_int(tcp.get("tcp.dstport"))
    elif "udp" in layers:
        protocol = TransportProtocol.UDP
        udp = _first(layers.get("udp")) or {}
        source_port = _optional_int(udp.get("udp.srcport"))
        dest_port = _optional_int(udp.get("udp.dstport"))
    else:
        protocol = TransportProtocol.OTHER

    return PacketRecord(
        timestamp_ms=timestamp_ms,
        source_address=src,
        dest_address=dst,
        protocol=protocol,
        byte_length=length,
        source_port=source_port,
        dest_port=dest_port,
    )


def _first(value: Any) -> Optional[Mapping[str, Any]]:
    # Repeated layers (tunnels) arrive as lists; the outermost one wins.
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, Mapping):
        return value
    return None


def _parse_int(value: Any, field: str) -> int:
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None or isinstance(value, bool):
        raise DecodeError(f"Capture record has no usable {field}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"Invalid {field}: {value!r}") from exc
    if parsed < 0:
        raise DecodeError(f"Invalid {field}: {value!r}")
    return parsed


def _optional_int(value: Any) -> Optional[int]:
    try:
        return _parse_int(value, "port")
    except DecodeError:
        return None


def _parse_epoch_ms(value: Any) -> float:
    if value is None:
        raise DecodeError("Capture record has no frame.time_epoch")

    try:
        seconds = float(value)
    except (TypeError, ValueError):
        seconds = _parse_iso_seconds(value)

    if not math.isfinite(seconds):
        raise DecodeError(f"Invalid frame.time_epoch: {value!r}")
    return seconds * MILLIS_PER_SECOND


def _parse_iso_seconds(value: Any) -> float:
    # Newer tshark releases render frame.time_epoch as ISO-8601 with nanoseconds.
    text = _EXCESS_FRACTION.sub(r"\1", str(value).strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as exc:
        raise DecodeError(f"Invalid frame.time_epoch: {value!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


__all__ = [
    "DEFAULT_MAX_BUFFER_BYTES",
    "DecodeError",
    "StreamDecoder",
    "record_from_tshark",
]
