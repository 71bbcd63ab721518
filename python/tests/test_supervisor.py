from __future__ import annotations

import pytest

from conftest import FakeProcessFactory, tshark_output, tshark_packet
from trafficgraph.config import CaptureOptions
from trafficgraph.supervisor import (
    DECODE_FAILURE_MESSAGE,
    PERMISSION_MESSAGE,
    SPAWN_FAILURE_MESSAGE,
    CaptureError,
    CaptureState,
    CaptureSupervisor,
)


def _supervisor(sink, factory, **options) -> CaptureSupervisor:
    return CaptureSupervisor(sink, factory, options=CaptureOptions(**options))


def test_start_spawns_tshark_with_structured_line_buffered_output(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)

    assert supervisor.state is CaptureState.IDLE
    assert supervisor.start("eth0") is True

    process = process_factory.last
    assert supervisor.state is CaptureState.RUNNING
    assert process.program == "tshark"
    assert process.arguments == ["-i", "eth0", "-T", "json", "-l", "-f", "ip"]


def test_sudo_and_filter_options_shape_the_command(sink, process_factory):
    supervisor = _supervisor(sink, process_factory, use_sudo=True, capture_filter=None, tshark_path="/usr/bin/tshark")

    supervisor.start("wlan0")

    process = process_factory.last
    assert process.program == "sudo"
    assert process.arguments == ["/usr/bin/tshark", "-i", "wlan0", "-T", "json", "-l"]


def test_stdout_records_are_forwarded_in_order(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    events = process_factory.last.handler
    payload = tshark_output(
        tshark_packet("10.0.0.1", "10.0.0.2", 100),
        tshark_packet("10.0.0.2", "10.0.0.1", 200),
    )

    events.on_stdout(payload[:17])
    events.on_stdout(payload[17:])

    assert [r.byte_length for r in sink.records] == [100, 200]
    assert sink.errors == []


def test_second_start_is_rejected_without_spawning(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")

    assert supervisor.start("eth1") is False
    assert len(process_factory.processes) == 1
    assert supervisor.target == "eth0"


def test_empty_target_is_a_usage_error(sink, process_factory):
    with pytest.raises(CaptureError):
        _supervisor(sink, process_factory).start("")


def test_permission_diagnostic_is_reported_once_and_process_kept(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    events = process_factory.last.handler

    events.on_stderr(b"Capturing on 'eth0'\n")
    events.on_stderr(b"tshark: The capture session could not be initiated (socket: Permis")
    events.on_stderr(b"sion denied).\n")
    events.on_stderr(b"dumpcap: Permission denied\n")

    assert sink.errors == [PERMISSION_MESSAGE]
    assert supervisor.state is CaptureState.RUNNING
    assert process_factory.last.running is True


def test_spawn_exception_fails_the_session(sink):
    factory = FakeProcessFactory(fail_on_start=True)
    supervisor = _supervisor(sink, factory)

    assert supervisor.start("eth0") is False
    assert supervisor.state is CaptureState.FAILED
    assert sink.errors == [SPAWN_FAILURE_MESSAGE]


def test_spawn_error_event_fails_running_capture(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    process = process_factory.last

    process.handler.on_process_error(SPAWN_FAILURE_MESSAGE)

    assert supervisor.state is CaptureState.FAILED
    assert sink.errors == [SPAWN_FAILURE_MESSAGE]
    assert process.terminate_calls == 1


def test_failed_capture_can_be_restarted(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    process_factory.last.handler.on_process_error("boom")

    assert supervisor.start("eth0") is True
    assert supervisor.state is CaptureState.RUNNING
    assert len(process_factory.processes) == 2


def test_unexpected_exit_fails_the_session(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("nonexistent0")
    process = process_factory.last
    process.running = False

    process.handler.on_stderr(b"tshark: Invalid capture filter")
    process.handler.on_process_exited(2)

    assert supervisor.state is CaptureState.FAILED
    assert sink.errors == ["Packet capture exited unexpectedly (exit code 2)."]
    assert process.terminate_calls == 0


def test_stop_terminates_and_is_idempotent(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    process = process_factory.last

    supervisor.stop()
    supervisor.stop()

    assert supervisor.state is CaptureState.STOPPED
    assert process.terminate_calls == 1
    assert supervisor.decoder is None

    # Exit after an explicit stop is not an error.
    process.handler.on_process_exited(0)
    assert sink.errors == []


def test_output_after_stop_is_ignored(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    events = process_factory.last.handler
    supervisor.stop()

    events.on_stdout(tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 1)))

    assert sink.records == []


def test_events_from_a_previous_run_are_ignored(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    stale = process_factory.last.handler
    supervisor.stop()
    supervisor.start("eth0")

    stale.on_process_exited(143)
    stale.on_stdout(tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 1)))

    assert supervisor.state is CaptureState.RUNNING
    assert sink.records == []
    assert sink.errors == []


def test_isolated_decode_errors_are_tolerated(sink, process_factory):
    supervisor = _supervisor(sink, process_factory, max_consecutive_decode_errors=3)
    supervisor.start("eth0")
    events = process_factory.last.handler
    bad = b'{"_source": {"layers": {}}}\n'
    good = tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 1))

    events.on_stdout(bad + bad + good + bad + bad + good)

    assert supervisor.state is CaptureState.RUNNING
    assert len(sink.records) == 2
    assert sink.errors == []


def test_run_of_decode_errors_fails_the_session(sink, process_factory):
    supervisor = _supervisor(sink, process_factory, max_consecutive_decode_errors=3)
    supervisor.start("eth0")
    process = process_factory.last
    bad = b'{"_source": {"layers": {}}}\n'
    good = tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 1))

    process.handler.on_stdout(bad * 3 + good)

    assert supervisor.state is CaptureState.FAILED
    assert sink.errors == [DECODE_FAILURE_MESSAGE]
    assert sink.records == []
    assert process.terminate_calls == 1


def test_sink_failure_does_not_stop_the_capture(process_factory):
    class ExplodingSink:
        def __init__(self) -> None:
            self.calls = 0

        def on_packet_record(self, record) -> None:
            self.calls += 1
            raise RuntimeError("viewer went away")

        def on_source_error(self, message: str) -> None:
            pass

    exploding = ExplodingSink()
    supervisor = CaptureSupervisor(exploding, process_factory)
    supervisor.start("eth0")

    process_factory.last.handler.on_stdout(
        tshark_output(tshark_packet("a", "b", 1), tshark_packet("b", "a", 2))
    )

    assert exploding.calls == 2
    assert supervisor.state is CaptureState.RUNNING


def test_records_before_a_failing_error_run_are_delivered(sink, process_factory):
    supervisor = _supervisor(sink, process_factory, max_consecutive_decode_errors=3)
    supervisor.start("eth0")
    bad = b'{"_source": {"layers": {}}}\n'
    good = tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 42))

    process_factory.last.handler.on_stdout(good + bad * 3 + good)

    assert [r.byte_length for r in sink.records] == [42]
    assert supervisor.state is CaptureState.FAILED
    assert sink.errors == [DECODE_FAILURE_MESSAGE]


def test_deeply_nested_output_does_not_escape_the_supervisor(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    nested = b"{" + b'"a":{' * 5_000 + b"}" * 5_001

    process_factory.last.handler.on_stdout(nested + tshark_output(tshark_packet("10.0.0.1", "10.0.0.2", 7)))

    assert [r.byte_length for r in sink.records] == [7]
    assert supervisor.state is CaptureState.RUNNING


def test_exit_after_permission_failure_is_reported_once(sink, process_factory):
    supervisor = _supervisor(sink, process_factory)
    supervisor.start("eth0")
    process = process_factory.last
    process.handler.on_stderr(b"tshark: Couldn't run dumpcap: Permission denied\n")
    process.running = False

    process.handler.on_process_exited(1)

    assert sink.errors == [PERMISSION_MESSAGE]
    assert supervisor.state is CaptureState.FAILED
    assert supervisor.start("eth0") is True
