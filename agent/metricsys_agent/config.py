"""
Agent 配置加载模块。

定义所有配置数据类，并从 YAML 文件加载配置。
支持环境变量覆盖（如 METRICSYS_DESTINATION_HOST）和时间间隔简写（如 '15s'、'1m'）。
"""
import ipaddress
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml

from metricsys_agent.errors import ConfigurationError
from metricsys_agent.models import CounterType, PublishedCounter, StaticCounterCatalog

# 单次注册请求的超时时间（秒），同时也是注册间隔的下限
REQUEST_TIMEOUT = 30.0
DEFAULT_INTERVAL = 60.0

_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9_-]{1,63}(?<!-)$")


@dataclass
class DestinationConfig:
    """注册目标（目录/聚合层）配置。"""
    host: str = ""
    port: int = 0


@dataclass
class SourceConfig:
    """本机身份配置，随注册记录一起上报。"""
    host: str = ""
    port: int = 0
    machine_function: str = ""
    datacenter: str = ""


@dataclass
class RegistrationConfig:
    """注册调度配置。"""
    interval: float = DEFAULT_INTERVAL           # 注册间隔（秒）
    request_timeout: float = REQUEST_TIMEOUT
    startup_jitter: float = 0.0                  # 首轮注册的随机延迟上限（秒）
    serializer: str = "binary"                   # binary / json


@dataclass
class CounterConfig:
    """配置文件中声明的计数器。"""
    name: str = ""
    type: str = "Unknown"
    dimensions: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass
class AgentConfig:
    """Agent 主配置，聚合所有子配置。"""
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    counters: List[CounterConfig] = field(default_factory=list)


def is_valid_hostname(value) -> bool:
    """判断是否为合法主机标识：DNS 名称、IPv4 或 IPv6 字面量（可带方括号）。"""
    if not isinstance(value, str) or not value:
        return False
    bracketed = value.startswith("[") and value.endswith("]")
    candidate = value[1:-1] if bracketed else value
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        address = None
    if address is not None:
        return not bracketed or address.version == 6
    if bracketed or len(value) > 255:
        return False
    name = value[:-1] if value.endswith(".") else value
    return all(_LABEL_RE.match(label) for label in name.split("."))


def effective_interval(interval: float, request_timeout: float = REQUEST_TIMEOUT) -> float:
    """实际调度间隔不小于请求超时，避免网络慢时轮次重叠。"""
    return max(interval, request_timeout)


def _parse_interval(val) -> float:
    """解析时间间隔，支持 '15s'、'1m'、'1h' 等简写格式。"""
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return float(val)
    s = str(val).strip().lower()
    try:
        if s.endswith("ms"):
            return float(s[:-2]) / 1000
        if s.endswith("s"):
            return float(s[:-1])
        if s.endswith("m"):
            return float(s[:-1]) * 60
        if s.endswith("h"):
            return float(s[:-1]) * 3600
        return float(s)
    except ValueError:
        raise ConfigurationError("interval", f"cannot parse interval {val!r}") from None


def _parse_port(val, param: str) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ConfigurationError(param, f"port must be an integer, got {val!r}") from None


def _parse_time(val, param: str) -> Optional[datetime]:
    if val is None or isinstance(val, datetime):
        return val
    try:
        return datetime.fromisoformat(str(val))
    except ValueError:
        raise ConfigurationError(param, f"invalid ISO timestamp {val!r}") from None


def load_config(path: str) -> AgentConfig:
    """从 YAML 文件加载 Agent 配置。

    Args:
        path: 配置文件路径。

    Returns:
        解析后的 AgentConfig 实例。此处只做类型解析，
        主机名、端口等取值校验在构造 RegistrationAgent 时进行。

    Raises:
        FileNotFoundError: 配置文件不存在时抛出。
        ConfigurationError: 配置内容无法解析时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(p) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("config", f"invalid YAML in {path}", str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError("config", f"top level of {path} must be a mapping")

    cfg = AgentConfig()

    # 解析注册目标配置，环境变量优先
    dst = data.get("destination") or {}
    cfg.destination.host = os.environ.get("METRICSYS_DESTINATION_HOST", dst.get("host", ""))
    cfg.destination.port = _parse_port(
        os.environ.get("METRICSYS_DESTINATION_PORT", dst.get("port", 0)), "destination.port"
    )

    # 解析本机身份配置
    src = data.get("source") or {}
    cfg.source.host = os.environ.get("METRICSYS_SOURCE_HOST", src.get("host", "")) or ""
    cfg.source.port = _parse_port(src.get("port", 0), "source.port")
    cfg.source.machine_function = src.get("machine_function") or ""
    cfg.source.datacenter = os.environ.get("METRICSYS_DATACENTER", src.get("datacenter") or "")

    # 解析调度配置
    reg = data.get("registration") or {}
    cfg.registration.interval = _parse_interval(reg.get("interval", DEFAULT_INTERVAL))
    cfg.registration.request_timeout = _parse_interval(reg.get("request_timeout", REQUEST_TIMEOUT))
    cfg.registration.startup_jitter = _parse_interval(reg.get("startup_jitter", 0))
    cfg.registration.serializer = reg.get("serializer", "binary")

    # 解析静态计数器声明
    for i, c in enumerate(data.get("counters") or []):
        if not c.get("name"):
            raise ConfigurationError(f"counters[{i}].name", "counter name is required")
        cfg.counters.append(CounterConfig(
            name=c["name"],
            type=c.get("type", "Unknown"),
            dimensions=list(c.get("dimensions") or []),
            start_time=_parse_time(c.get("start_time"), f"counters[{i}].start_time"),
            end_time=_parse_time(c.get("end_time"), f"counters[{i}].end_time"),
        ))

    return cfg


def build_catalog(cfg: AgentConfig) -> StaticCounterCatalog:
    """根据配置中声明的计数器构造静态计数器目录。"""
    now = datetime.now(timezone.utc)
    counters = []
    for c in cfg.counters:
        try:
            counter_type = CounterType(c.type)
        except ValueError:
            raise ConfigurationError(
                "counters.type", f"unknown counter type {c.type!r} for {c.name}"
            ) from None
        counters.append(PublishedCounter(
            name=c.name,
            type=counter_type,
            dimensions=tuple(c.dimensions),
            start_time=c.start_time or now,
            end_time=c.end_time or now,
        ))
    return StaticCounterCatalog(counters)
