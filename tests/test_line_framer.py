"""Tests for newline framing of the raw serial byte stream."""

import pytest

from shutter_lib.framing import LineFramer


STREAM = (
    b'{"effectiveTime":500,"totalTime":10000,"relativeSignal":0.5,"maxRelativeSignal":0.9}\n'
    b"\n"
    b'  {"effectiveTime":1000,"totalTime":1200,"relativeSignal":0.25,"maxRelativeSignal":0.3}  \r\n'
    b'{"note":"caf\xc3\xa9 \xe2\x9c\x93"}\n'
    b'{"effectiveTi'
)


def test_two_complete_lines_leave_buffer_empty() -> None:
    """Test two newline-terminated objects yield exactly two lines."""
    framer = LineFramer()

    lines = list(framer.feed(b'{"a":1}\n{"b":2}\n'))

    assert lines == ['{"a":1}', '{"b":2}']
    assert framer.pending == ""
    assert len(framer) == 0


def test_partial_line_is_buffered() -> None:
    """Test text without a newline yields nothing and stays buffered."""
    framer = LineFramer()

    assert list(framer.feed(b"partial")) == []
    assert framer.pending == "partial"


def test_partial_line_completed_by_next_chunk() -> None:
    """Test a fragment is joined with the following chunk."""
    framer = LineFramer()

    assert list(framer.feed(b'{"effective')) == []
    assert list(framer.feed(b'Time":1}\n{"x"')) == ['{"effectiveTime":1}']
    assert framer.pending == '{"x"'


def test_lines_are_stripped_and_blank_lines_emitted() -> None:
    """Test surrounding whitespace and CR are trimmed; blank lines come out empty."""
    framer = LineFramer()

    lines = list(framer.feed(b"  one \r\n\n\t\ntwo\n"))

    assert lines == ["one", "", "", "two"]


def test_byte_by_byte_matches_all_at_once() -> None:
    """Test chunking independence, including multi-byte UTF-8 split across reads."""
    whole = LineFramer()
    expected = list(whole.feed(STREAM))

    split = LineFramer()
    actual = []
    for i in range(len(STREAM)):
        actual.extend(split.feed(STREAM[i : i + 1]))

    assert actual == expected
    assert split.pending == whole.pending == '{"effectiveTi'
    assert any("café ✓" in line for line in actual)


@pytest.mark.parametrize("chunk_size", [2, 3, 7, 16, 64])
def test_arbitrary_chunk_sizes_match(chunk_size: int) -> None:
    """Test several fixed chunk sizes produce identical lines."""
    expected = list(LineFramer().feed(STREAM))

    framer = LineFramer()
    actual = []
    for i in range(0, len(STREAM), chunk_size):
        actual.extend(framer.feed(STREAM[i : i + chunk_size]))

    assert actual == expected


def test_invalid_utf8_does_not_abort_chunk() -> None:
    """Test invalid bytes are replaced and following lines still decode."""
    framer = LineFramer()

    lines = list(framer.feed(b"bad \xff\xfe line\ngood\n"))

    assert len(lines) == 2
    assert "�" in lines[0]
    assert lines[1] == "good"


def test_unconsumed_lines_are_yielded_by_next_feed() -> None:
    """Test the framer is restartable when the caller stops iterating early."""
    framer = LineFramer()

    lines = framer.feed(b"a\nb\nc\n")
    assert next(lines) == "a"

    assert list(framer.feed(b"d\n")) == ["b", "c", "d"]


def test_clear_drops_pending_text() -> None:
    """Test clear() empties the buffer and resets half-decoded bytes."""
    framer = LineFramer()
    list(framer.feed(b"partial \xe2\x9c"))  # Incomplete 3-byte sequence

    framer.clear()

    assert framer.pending == ""
    assert list(framer.feed(b"next\n")) == ["next"]


def test_overflow_keeps_newest_text() -> None:
    """Test a fragment beyond the bound is trimmed from the front and counted."""
    framer = LineFramer(max_buffer_chars=8)

    assert list(framer.feed(b"0123456789ABCDEF")) == []

    assert framer.pending == "89ABCDEF"
    assert framer.take_overflow() == 8
    assert framer.take_overflow() == 0

    assert list(framer.feed(b"\n")) == ["89ABCDEF"]


def test_overflow_bound_does_not_affect_short_lines() -> None:
    """Test complete lines in one large chunk are not trimmed by the bound."""
    framer = LineFramer(max_buffer_chars=8)

    lines = list(framer.feed(b"short\nalso short\nx"))

    assert lines == ["short", "also short"]
    assert framer.pending == "x"
    assert framer.take_overflow() == 0


def test_invalid_bound_rejected() -> None:
    """Test non-positive bound raises."""
    with pytest.raises(ValueError):
        LineFramer(max_buffer_chars=0)


def test_bound_applies_when_lines_are_not_consumed() -> None:
    """Test feed() trims an oversized fragment even if its iterator is discarded."""
    framer = LineFramer(max_buffer_chars=8)

    framer.feed(b"0123456789ABCDEF")
    framer.feed(b"GHIJ")

    assert framer.pending == "CDEFGHIJ"
    assert framer.take_overflow() == 12


def test_bound_trims_only_the_trailing_fragment() -> None:
    """Test completed lines waiting to be read survive a trim of the fragment after them."""
    framer = LineFramer(max_buffer_chars=4)

    framer.feed(b"kept line\n0123456789")

    assert framer.take_overflow() == 6
    assert list(framer.feed(b"\n")) == ["kept line", "6789"]
