"""注册载荷序列化测试。"""
import pytest

from metricsys_agent.errors import ConfigurationError, SerializationError
from metricsys_agent.models import CounterDescriptor, RegistrationRecord
from metricsys_agent.serializer import (
    MAGIC,
    CompactBinarySerializer,
    JsonSerializer,
    get_serializer,
)


@pytest.fixture
def record():
    return RegistrationRecord(
        hostname="server01",
        port=4201,
        machine_function="frontend",
        datacenter="西部",
        counters=[
            CounterDescriptor("/Requests", "HitCount", ("Datacenter", "Server"), 1420070400000, 1420070700000),
            CounterDescriptor("/Old", "Histogram", (), -86400000, 0),
        ],
    )


class TestCompactBinary:
    def test_decodes_what_it_encodes(self, record):
        serializer = CompactBinarySerializer()
        data = serializer.serialize(record)
        assert data.startswith(MAGIC)
        assert serializer.deserialize(data) == record

    def test_output_is_deterministic(self, record):
        serializer = CompactBinarySerializer()
        assert serializer.serialize(record) == serializer.serialize(record)

    def test_empty_record_layout(self):
        data = CompactBinarySerializer().serialize(RegistrationRecord(hostname="h", port=300))
        # magic, "h", port 300 as varint (0xAC 0x02), two empty labels, zero counters
        assert data == MAGIC + b"\x01h" + b"\xac\x02" + b"\x00\x00" + b"\x00"

    def test_rejects_missing_header(self):
        with pytest.raises(SerializationError):
            CompactBinarySerializer().deserialize(b"nope")

    def test_rejects_truncated_payload(self, record):
        data = CompactBinarySerializer().serialize(record)
        with pytest.raises(SerializationError):
            CompactBinarySerializer().deserialize(data[:-3])

    def test_rejects_trailing_bytes(self, record):
        data = CompactBinarySerializer().serialize(record)
        with pytest.raises(SerializationError):
            CompactBinarySerializer().deserialize(data + b"\x00")


class TestJson:
    def test_decodes_what_it_encodes(self, record):
        serializer = JsonSerializer()
        assert serializer.deserialize(serializer.serialize(record)) == record

    def test_rejects_garbage(self):
        with pytest.raises(SerializationError):
            JsonSerializer().deserialize(b"{not json")


def test_get_serializer():
    assert isinstance(get_serializer("binary"), CompactBinarySerializer)
    assert isinstance(get_serializer("json"), JsonSerializer)
    with pytest.raises(ConfigurationError):
        get_serializer("xml")
