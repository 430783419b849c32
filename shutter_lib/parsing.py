"""Pure functions for decoding and encoding telemetry lines."""

import json
import logging
import math
from typing import Any, Dict

from shutter_lib import protocol
from shutter_lib.models import (
    DecodeError,
    DecodeErrorKind,
    DecodeResult,
    MeasurementRecord,
)

logger = logging.getLogger(__name__)

_EMPTY = DecodeResult()


class _NonFiniteNumber(ValueError):
    pass


def _reject_constant(token: str) -> Any:
    # NaN, Infinity and -Infinity are accepted by json.loads but are not JSON
    raise _NonFiniteNumber(f"Non-finite number {token} is not allowed")


def parse_record_line(line: str) -> DecodeResult:
    """Decode one complete line into a MeasurementRecord.

    Expected format: {"effectiveTime": <int>, "totalTime": <int>,
    "relativeSignal": <number>, "maxRelativeSignal": <number>}
    Example: '{"effectiveTime":500,"totalTime":10000,"relativeSignal":0.5,"maxRelativeSignal":0.9}'

    Unknown keys are ignored. This function never raises; every failure is
    returned as a DecodeError for the caller to log and skip.

    Args:
        line: One line from the framer (LF already removed)

    Returns:
        DecodeResult with a record, an error, or neither for blank input
    """
    text = line.strip()
    if not text:
        return _EMPTY

    try:
        obj = json.loads(text, parse_constant=_reject_constant)
    except _NonFiniteNumber as e:
        return _failure(DecodeErrorKind.MALFORMED, str(e), text)
    except ValueError as e:
        return _failure(DecodeErrorKind.INVALID_JSON, f"Not valid JSON: {e}", text)

    if not isinstance(obj, dict):
        return _failure(
            DecodeErrorKind.MALFORMED, f"Expected a JSON object, got {type(obj).__name__}", text
        )

    try:
        return DecodeResult(record=record_from_mapping(obj))
    except (TypeError, ValueError) as e:
        return _failure(DecodeErrorKind.MALFORMED, str(e), text)


def record_from_mapping(obj: Dict[str, Any]) -> MeasurementRecord:
    """Build a MeasurementRecord from a decoded JSON object.

    Args:
        obj: Mapping using the wire key names

    Returns:
        MeasurementRecord

    Raises:
        TypeError: If a value has the wrong JSON type
        ValueError: If a required key is missing or a value is out of range
    """
    missing = [
        key for key in protocol.INT_KEYS + protocol.FLOAT_KEYS if key not in obj
    ]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")

    for key in protocol.INT_KEYS:
        _require_int(key, obj[key])
    for key in protocol.FLOAT_KEYS:
        _require_number(key, obj[key])

    return MeasurementRecord(
        effective_time=obj[protocol.KEY_EFFECTIVE_TIME],
        total_time=obj[protocol.KEY_TOTAL_TIME],
        relative_signal=float(obj[protocol.KEY_RELATIVE_SIGNAL]),
        max_relative_signal=float(obj[protocol.KEY_MAX_RELATIVE_SIGNAL]),
    )


def encode_record(record: MeasurementRecord) -> str:
    """Encode a record as one wire line, including the LF terminator.

    Args:
        record: Record to encode

    Returns:
        Compact JSON object followed by a newline

    Raises:
        ValueError: If a signal value is NaN or infinite
    """
    payload = {
        protocol.KEY_EFFECTIVE_TIME: record.effective_time,
        protocol.KEY_TOTAL_TIME: record.total_time,
        protocol.KEY_RELATIVE_SIGNAL: record.relative_signal,
        protocol.KEY_MAX_RELATIVE_SIGNAL: record.max_relative_signal,
    }
    return json.dumps(payload, separators=(",", ":"), allow_nan=False) + protocol.LINE_TERMINATOR


def _require_int(key: str, value: Any) -> None:
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"Field {key!r} must be an integer, got {value!r}")


def _require_number(key: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Field {key!r} must be a number, got {value!r}")
    try:
        finite = math.isfinite(value)
    except OverflowError:  # Integer too large for a float
        finite = False
    if not finite:
        raise ValueError(f"Field {key!r} must be finite, got {value!r}")


def _failure(kind: DecodeErrorKind, reason: str, line: str) -> DecodeResult:
    logger.debug(f"Rejected line ({kind.value}): {reason}")
    return DecodeResult(error=DecodeError(kind=kind, reason=reason, line=line))
