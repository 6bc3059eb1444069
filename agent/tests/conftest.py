"""
Agent 测试基础配置

提供记录型事件接收器、可控的主机名解析器、httpx.MockTransport 注册端点等通用 fixture。
所有测试都不访问真实网络和 DNS。
"""
import asyncio
import ipaddress
from datetime import datetime, timezone

import httpx
import pytest

from metricsys_agent.agent import RegistrationAgent
from metricsys_agent.errors import ResolutionError
from metricsys_agent.models import CounterType, PublishedCounter, StaticCounterCatalog


class RecordingEventSink:
    """记录所有事件，供断言使用。"""

    def __init__(self):
        self.resolution_failures = []
        self.successes = []
        self.failures = []

    def resolution_failed(self, hostname, message):
        self.resolution_failures.append((hostname, message))

    def registration_succeeded(self, uri):
        self.successes.append(uri)

    def registration_failed(self, uri, status_code, message):
        self.failures.append((uri, status_code, message))


class FakeResolver:
    """返回固定地址列表；fail=True 时模拟 DNS 失败。"""

    def __init__(self, *addresses, fail=False):
        self.addresses = [ipaddress.ip_address(a) for a in addresses]
        self.fail = fail
        self.calls = 0

    async def __call__(self, hostname):
        self.calls += 1
        if self.fail:
            raise ResolutionError(hostname, "Name or service not known")
        return list(self.addresses)


class RegistrationEndpoint:
    """记录收到的注册请求，并按 handler 返回响应。"""

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    def factory(self):
        return lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(self), follow_redirects=False
        )


async def wait_until(predicate, timeout=2.0):
    """轮询等待条件成立。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_counter(name, dimensions=("Datacenter",)):
    return PublishedCounter(
        name=name,
        type=CounterType.HIT_COUNT,
        dimensions=dimensions,
        start_time=datetime(2015, 1, 1, tzinfo=timezone.utc),
        end_time=datetime(2015, 1, 1, 0, 5, tzinfo=timezone.utc),
    )


@pytest.fixture
def catalog():
    return StaticCounterCatalog([make_counter("/Requests"), make_counter("/Latency", ("Server", "Path"))])


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def endpoint():
    return RegistrationEndpoint()


@pytest.fixture
def make_agent(catalog, events, endpoint):
    def _make(resolver=None, **kwargs):
        kwargs.setdefault("event_sink", events)
        kwargs.setdefault("transport_factory", endpoint.factory())
        return RegistrationAgent(
            kwargs.pop("destination_hostname", "registry.example.com"),
            kwargs.pop("destination_port", 4200),
            kwargs.pop("source_hostname", "server01"),
            kwargs.pop("source_port", 4201),
            kwargs.pop("machine_function", "frontend"),
            kwargs.pop("datacenter", "west"),
            kwargs.pop("interval", 60),
            kwargs.pop("catalog", catalog),
            resolver=resolver or FakeResolver("10.0.0.1"),
            **kwargs,
        )
    return _make
