"""主机名解析测试 — 通过 mock getaddrinfo 避免真实 DNS。"""
import asyncio
import ipaddress
import socket
from unittest.mock import AsyncMock, patch

import pytest

from metricsys_agent.errors import ResolutionError
from metricsys_agent.resolver import resolve_host


def _info(family, address):
    sockaddr = (address, 0) if family == socket.AF_INET else (address, 0, 0, 0)
    return (family, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", sockaddr)


@pytest.mark.asyncio
async def test_returns_deduplicated_addresses_in_order():
    infos = [
        _info(socket.AF_INET, "10.0.0.2"),
        _info(socket.AF_INET6, "fd00::1"),
        _info(socket.AF_INET, "10.0.0.2"),
        _info(socket.AF_INET, "10.0.0.1"),
    ]
    loop = asyncio.get_running_loop()
    with patch.object(loop, "getaddrinfo", AsyncMock(return_value=infos)) as mock_gai:
        addresses = await resolve_host("registry.example.com")
    assert addresses == [
        ipaddress.ip_address("10.0.0.2"),
        ipaddress.ip_address("fd00::1"),
        ipaddress.ip_address("10.0.0.1"),
    ]
    assert mock_gai.call_args.args[0] == "registry.example.com"


@pytest.mark.asyncio
async def test_bracketed_ipv6_is_unbracketed():
    loop = asyncio.get_running_loop()
    infos = [_info(socket.AF_INET6, "::1")]
    with patch.object(loop, "getaddrinfo", AsyncMock(return_value=infos)) as mock_gai:
        addresses = await resolve_host("[::1]")
    assert addresses == [ipaddress.ip_address("::1")]
    assert mock_gai.call_args.args[0] == "::1"


@pytest.mark.asyncio
async def test_gaierror_becomes_resolution_error():
    loop = asyncio.get_running_loop()
    error = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
    with patch.object(loop, "getaddrinfo", AsyncMock(side_effect=error)):
        with pytest.raises(ResolutionError) as exc:
            await resolve_host("missing.example.com")
    assert exc.value.hostname == "missing.example.com"
    assert "Name or service not known" in str(exc.value)


@pytest.mark.asyncio
async def test_slow_resolver_times_out():
    async def slow(*args, **kwargs):
        await asyncio.sleep(5)

    loop = asyncio.get_running_loop()
    with patch.object(loop, "getaddrinfo", slow):
        with pytest.raises(ResolutionError) as exc:
            await resolve_host("slow.example.com", timeout=0.01)
    assert "timed out" in str(exc.value)
