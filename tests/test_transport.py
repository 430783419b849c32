"""Tests for the serial Transport wrapper using FakeSerial."""

import pytest

from fakes.fake_serial import FakeSerial
from shutter_lib import protocol
from shutter_lib.errors import SerialIOError
from shutter_lib.transport import Transport


def test_configure_applies_link_settings() -> None:
    """Test configure() writes 115200 8N1 to the port."""
    fake_serial = FakeSerial(stream=False)
    transport = Transport(fake_serial)

    transport.configure()

    assert fake_serial.baudrate == protocol.BAUD_RATE
    assert fake_serial.bytesize == 8
    assert fake_serial.stopbits == 1
    assert fake_serial.parity == "N"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"data_bits": 9},
        {"stop_bits": 3},
        {"parity": "X"},
    ],
)
def test_configure_rejects_invalid_parameters(kwargs) -> None:
    """Test out-of-range link parameters raise ValueError."""
    transport = Transport(FakeSerial(stream=False))

    with pytest.raises(ValueError):
        transport.configure(**kwargs)


def test_configure_closed_port_raises() -> None:
    """Test configuring a closed port raises SerialIOError."""
    fake_serial = FakeSerial(stream=False)
    fake_serial.close()

    with pytest.raises(SerialIOError):
        Transport(fake_serial).configure()


def test_set_control_lines_starts_stream() -> None:
    """Test asserting DTR and RTS makes the fake tester start streaming."""
    fake_serial = FakeSerial()
    transport = Transport(fake_serial)

    assert not fake_serial.streaming
    transport.set_control_lines(dtr=True, rts=True)

    assert fake_serial.dtr and fake_serial.rts
    assert fake_serial.streaming

    transport.close()
    assert not fake_serial.streaming


def test_read_chunk_times_out_with_empty_data() -> None:
    """Test a quiet port yields an empty, successful ReadResult."""
    fake_serial = FakeSerial(stream=False)
    fake_serial.timeout = 0.05
    transport = Transport(fake_serial)

    result = transport.read_chunk()

    assert not result.failed
    assert result.data == b""


def test_read_chunk_returns_backlog() -> None:
    """Test all buffered bytes come back in one chunk, capped by size."""
    fake_serial = FakeSerial(stream=False)
    transport = Transport(fake_serial)
    fake_serial.inject(b"0123456789")

    assert transport.read_chunk(4).data == b"0123"
    assert transport.read_chunk().data == b"456789"


def test_read_chunk_reports_failure() -> None:
    """Test a raising read becomes an error result, not an exception."""
    fake_serial = FakeSerial(stream=False)
    transport = Transport(fake_serial)
    fake_serial.fail_reads("device disconnected")

    result = transport.read_chunk()

    assert result.failed
    assert "device disconnected" in result.error


def test_read_chunk_on_closed_port() -> None:
    """Test reading a closed port reports an error."""
    fake_serial = FakeSerial(stream=False)
    transport = Transport(fake_serial)
    transport.close()

    result = transport.read_chunk()

    assert result.failed
    assert not transport.is_open


def test_close_is_idempotent_and_swallows_errors() -> None:
    """Test close() twice only closes once and never raises."""
    fake_serial = FakeSerial(stream=False)
    transport = Transport(fake_serial)

    transport.close()
    transport.close()
    assert fake_serial.close_calls == 1

    class ExplodingSerial(FakeSerial):
        def close(self) -> None:
            raise OSError("already gone")

    Transport(ExplodingSerial(stream=False)).close()


def test_name_defaults_to_port() -> None:
    """Test the endpoint name falls back to the port attribute."""
    assert Transport(FakeSerial(port="/dev/ttyACM7", stream=False)).name == "/dev/ttyACM7"
    assert Transport(FakeSerial(stream=False), name="custom").name == "custom"
