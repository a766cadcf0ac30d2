"""Decoder for the JSON event stream of a libtest binary.

A test binary run with `-Z unstable-options --format json` writes one JSON
object per line, e.g.

    {"type": "suite", "event": "started", "test_count": 3}
    {"type": "test", "event": "failed", "name": "a::b", "stdout": "..."}
    {"type": "suite", "event": "failed", "passed": 1, "failed": 2, ...}

Each line decodes to exactly one value: a known Event variant, an
OtherEvent for well-formed messages this runner does not consume, or a
DecodeError for lines that are not a JSON object at all.
"""

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Optional, Tuple, Type, Union

import jsonschema


# =============================================================================
# EVENT VARIANTS
# =============================================================================

@dataclass(frozen=True)
class SuiteStarted:
    TYPE: ClassVar[str] = "suite"
    EVENT: ClassVar[str] = "started"

    test_count: int


@dataclass(frozen=True)
class SuiteOk:
    TYPE: ClassVar[str] = "suite"
    EVENT: ClassVar[str] = "ok"

    passed: int
    failed: int
    ignored: int
    measured: int
    filtered_out: int


@dataclass(frozen=True)
class SuiteFailed:
    TYPE: ClassVar[str] = "suite"
    EVENT: ClassVar[str] = "failed"

    passed: int
    failed: int
    ignored: int
    measured: int
    filtered_out: int


@dataclass(frozen=True)
class TestOk:
    TYPE: ClassVar[str] = "test"
    EVENT: ClassVar[str] = "ok"

    name: str


@dataclass(frozen=True)
class TestFailed:
    TYPE: ClassVar[str] = "test"
    EVENT: ClassVar[str] = "failed"

    name: str
    stdout: Optional[str] = None


@dataclass(frozen=True)
class TestIgnored:
    TYPE: ClassVar[str] = "test"
    EVENT: ClassVar[str] = "ignored"

    name: str


@dataclass(frozen=True)
class OtherEvent:
    """A well-formed message that matches none of the variants above."""
    payload: Dict[str, Any]


@dataclass(frozen=True)
class DecodeError:
    """A line that could not be decoded as a JSON object."""
    line: str
    reason: str


Event = Union[SuiteStarted, SuiteOk, SuiteFailed, TestOk, TestFailed, TestIgnored, OtherEvent]
Decoded = Union[Event, DecodeError]


def event_to_wire(event: Event) -> Dict[str, Any]:
    """Convert an event back to its libtest wire representation."""
    if isinstance(event, OtherEvent):
        return dict(event.payload)
    wire = {"type": event.TYPE, "event": event.EVENT}
    wire.update({k: v for k, v in asdict(event).items() if v is not None})
    return wire


# =============================================================================
# SCHEMAS
# =============================================================================

_COUNT = {"type": "integer", "minimum": 0}
_SUITE_COUNTS = ["passed", "failed", "ignored", "measured", "filtered_out"]


def _message_schema(variant: Type, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    props = {
        "type": {"const": variant.TYPE},
        "event": {"const": variant.EVENT},
    }
    props.update(properties)
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": props,
        "required": ["type", "event"] + required,
    }


_TEST_NAME = {"name": {"type": "string"}}
_SUITE_RESULT = {name: _COUNT for name in _SUITE_COUNTS}

_VARIANT_SCHEMAS: List[Tuple[Type, Dict[str, Any]]] = [
    (SuiteStarted, _message_schema(SuiteStarted, {"test_count": _COUNT}, ["test_count"])),
    (SuiteOk, _message_schema(SuiteOk, _SUITE_RESULT, _SUITE_COUNTS)),
    (SuiteFailed, _message_schema(SuiteFailed, _SUITE_RESULT, _SUITE_COUNTS)),
    (TestOk, _message_schema(TestOk, _TEST_NAME, ["name"])),
    (
        TestFailed,
        _message_schema(
            TestFailed,
            {"name": {"type": "string"}, "stdout": {"type": ["string", "null"]}},
            ["name"],
        ),
    ),
    (TestIgnored, _message_schema(TestIgnored, _TEST_NAME, ["name"])),
]

_VALIDATORS = [
    (variant, jsonschema.Draft7Validator(schema)) for variant, schema in _VARIANT_SCHEMAS
]


# =============================================================================
# DECODING
# =============================================================================

def classify(message: Dict[str, Any]) -> Event:
    """Map a decoded JSON object onto exactly one Event variant."""
    for variant, validator in _VALIDATORS:
        if validator.is_valid(message):
            names = [f.name for f in fields(variant)]
            return variant(**{name: message[name] for name in names if name in message})
    return OtherEvent(payload=message)


def decode_line(line: Union[str, bytes]) -> Decoded:
    """
    Decode a single line of test output.

    Returns:
        An Event, or a DecodeError if the line is not a JSON object.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.rstrip("\r\n")

    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        return DecodeError(line=line, reason=f"invalid JSON: {e}")

    if not isinstance(message, dict):
        return DecodeError(line=line, reason=f"expected a JSON object, got {type(message).__name__}")

    return classify(message)


def decode_stream(stream: Iterable[Union[str, bytes]]) -> Iterator[Decoded]:
    """
    Lazily decode a line-oriented event stream.

    Lines are read one at a time, so this only blocks waiting for the next
    line. Blank lines are skipped; a bad line yields a DecodeError and
    decoding carries on with the following line.
    """
    for line in stream:
        if not line.strip():
            continue
        yield decode_line(line)
