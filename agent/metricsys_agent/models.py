"""
注册数据模型。

- CounterType / PublishedCounter: 计数器目录中发布的计数器
- CounterDescriptor: 复制到注册记录中的计数器描述（毫秒时间戳）
- RegistrationRecord: 每轮注册发送的完整载荷
- StaticCounterCatalog: 线程安全的内存计数器目录
"""
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple


class CounterType(str, Enum):
    UNKNOWN = "Unknown"
    HIT_COUNT = "HitCount"
    HISTOGRAM = "Histogram"


def to_millisecond_timestamp(value: datetime) -> int:
    """datetime 转毫秒级 Unix 时间戳，naive datetime 按 UTC 处理。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


@dataclass
class PublishedCounter:
    """计数器目录中的一个计数器。"""
    name: str
    type: CounterType = CounterType.UNKNOWN
    dimensions: Sequence[str] = field(default_factory=tuple)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CounterCatalog(Protocol):
    """外部计数器目录：支持在计数器增删的同时被并发遍历。"""

    @property
    def counters(self) -> Iterable[Any]:
        ...


@dataclass(frozen=True)
class CounterDescriptor:
    name: str
    type: str
    dimensions: Tuple[str, ...]
    start_time: int
    end_time: int

    @classmethod
    def from_counter(cls, counter: Any) -> "CounterDescriptor":
        """按值复制目录中的计数器，之后目录的变化不会影响本轮记录。"""
        counter_type = counter.type
        if isinstance(counter_type, Enum):
            counter_type = counter_type.value
        start, end = counter.start_time, counter.end_time
        return cls(
            name=counter.name,
            type=str(counter_type),
            dimensions=tuple(counter.dimensions),
            start_time=start if isinstance(start, int) else to_millisecond_timestamp(start),
            end_time=end if isinstance(end, int) else to_millisecond_timestamp(end),
        )


@dataclass
class RegistrationRecord:
    hostname: str
    port: int
    machine_function: str = ""
    datacenter: str = ""
    counters: List[CounterDescriptor] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for counter in data["counters"]:
            counter["dimensions"] = list(counter["dimensions"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistrationRecord":
        counters = [
            CounterDescriptor(
                name=c["name"],
                type=c["type"],
                dimensions=tuple(c.get("dimensions", ())),
                start_time=int(c["start_time"]),
                end_time=int(c["end_time"]),
            )
            for c in data.get("counters", [])
        ]
        return cls(
            hostname=data["hostname"],
            port=int(data["port"]),
            machine_function=data.get("machine_function", ""),
            datacenter=data.get("datacenter", ""),
            counters=counters,
        )


class StaticCounterCatalog:
    """Thread-safe, in-memory counter catalog.

    ``counters`` returns a snapshot tuple, so callers may iterate it while
    other threads keep adding or removing counters.
    """

    def __init__(self, counters: Optional[Iterable[PublishedCounter]] = None):
        self._lock = threading.Lock()
        self._counters: Dict[str, PublishedCounter] = {}
        for counter in counters or ():
            self.add_counter(counter)

    @property
    def counters(self) -> Tuple[PublishedCounter, ...]:
        with self._lock:
            return tuple(self._counters.values())

    def add_counter(self, counter: PublishedCounter) -> None:
        with self._lock:
            self._counters[counter.name] = counter

    def remove_counter(self, name: str) -> bool:
        with self._lock:
            return self._counters.pop(name, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
