"""Registration payload serializers.

Both serializers turn a RegistrationRecord into one opaque byte buffer that is
built once per round and shared by every delivery. ``deserialize`` is the
receiving endpoint's half and is used here by the tests and the CLI.

Compact binary layout (all integers are LEB128 varints)::

    magic "MSR\\x01"
    hostname, port, machine_function, datacenter
    counter count, then per counter:
        name, type, dimension count, dimensions..., start_time, end_time

Strings are a byte length followed by UTF-8 bytes. Timestamps are zig-zag
encoded so pre-epoch values survive.
"""
import json
from typing import Protocol, Tuple

from metricsys_agent.errors import ConfigurationError, SerializationError
from metricsys_agent.models import CounterDescriptor, RegistrationRecord

MAGIC = b"MSR\x01"


class Serializer(Protocol):
    content_type: str

    def serialize(self, record: RegistrationRecord) -> bytes:
        ...


def _write_uvarint(buf: bytearray, value: int) -> None:
    if value < 0:
        raise SerializationError(f"Cannot encode negative varint {value}")
    while value >= 0x80:
        buf.append((value & 0x7F) | 0x80)
        value >>= 7
    buf.append(value)


def _zigzag(value: int) -> int:
    return value * 2 if value >= 0 else -value * 2 - 1


def _unzigzag(value: int) -> int:
    return value >> 1 if not value & 1 else -((value + 1) >> 1)


def _write_string(buf: bytearray, value: str) -> None:
    data = value.encode("utf-8")
    _write_uvarint(buf, len(data))
    buf.extend(data)


class _Reader:
    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self._pos = 0

    def uvarint(self) -> int:
        result = 0
        shift = 0
        while True:
            if self._pos >= len(self._data):
                raise SerializationError("Truncated varint")
            byte = self._data[self._pos]
            self._pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7

    def string(self) -> str:
        length = self.uvarint()
        end = self._pos + length
        if end > len(self._data):
            raise SerializationError("Truncated string")
        raw = bytes(self._data[self._pos:end])
        self._pos = end
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"Invalid UTF-8 string: {e}") from e

    def expect_end(self) -> None:
        if self._pos != len(self._data):
            raise SerializationError(f"{len(self._data) - self._pos} trailing bytes")


class CompactBinarySerializer:
    content_type = "application/octet-stream"

    def serialize(self, record: RegistrationRecord) -> bytes:
        buf = bytearray(MAGIC)
        _write_string(buf, record.hostname)
        _write_uvarint(buf, record.port)
        _write_string(buf, record.machine_function)
        _write_string(buf, record.datacenter)
        _write_uvarint(buf, len(record.counters))
        for counter in record.counters:
            _write_string(buf, counter.name)
            _write_string(buf, counter.type)
            _write_uvarint(buf, len(counter.dimensions))
            for dimension in counter.dimensions:
                _write_string(buf, dimension)
            _write_uvarint(buf, _zigzag(counter.start_time))
            _write_uvarint(buf, _zigzag(counter.end_time))
        return bytes(buf)

    def deserialize(self, data: bytes) -> RegistrationRecord:
        if not data.startswith(MAGIC):
            raise SerializationError("Missing registration payload header")
        reader = _Reader(data[len(MAGIC):])
        record = RegistrationRecord(
            hostname=reader.string(),
            port=reader.uvarint(),
            machine_function=reader.string(),
            datacenter=reader.string(),
        )
        for _ in range(reader.uvarint()):
            name = reader.string()
            counter_type = reader.string()
            dimensions: Tuple[str, ...] = tuple(reader.string() for _ in range(reader.uvarint()))
            record.counters.append(CounterDescriptor(
                name=name,
                type=counter_type,
                dimensions=dimensions,
                start_time=_unzigzag(reader.uvarint()),
                end_time=_unzigzag(reader.uvarint()),
            ))
        reader.expect_end()
        return record


class JsonSerializer:
    content_type = "application/json"

    def serialize(self, record: RegistrationRecord) -> bytes:
        return json.dumps(record.to_dict(), separators=(",", ":")).encode("utf-8")

    def deserialize(self, data: bytes) -> RegistrationRecord:
        try:
            return RegistrationRecord.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            raise SerializationError(f"Invalid JSON registration payload: {e}") from e


SERIALIZERS = {
    "binary": CompactBinarySerializer,
    "json": JsonSerializer,
}


def get_serializer(name: str) -> Serializer:
    try:
        return SERIALIZERS[name]()
    except KeyError:
        raise ConfigurationError(
            "serializer", f"unknown serializer {name!r}, expected one of {sorted(SERIALIZERS)}"
        ) from None
