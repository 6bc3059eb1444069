"""
目标主机名解析模块。

通过事件循环的 getaddrinfo（线程池中执行）异步解析主机名，
返回去重后的 IPv4/IPv6 地址列表。任何解析失败统一转换为 ResolutionError。
"""
import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, List, Optional, Union

from metricsys_agent.config import REQUEST_TIMEOUT
from metricsys_agent.errors import ResolutionError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Resolver = Callable[[str], Awaitable[List[IPAddress]]]


async def resolve_host(hostname: str, timeout: Optional[float] = REQUEST_TIMEOUT) -> List[IPAddress]:
    """解析主机名为地址列表，保持 getaddrinfo 返回顺序。

    Raises:
        ResolutionError: 名称无法解析、解析超时或系统解析器出错。
    """
    host = hostname[1:-1] if hostname.startswith("[") and hostname.endswith("]") else hostname
    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(host, None, proto=socket.IPPROTO_TCP),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise ResolutionError(hostname, f"Resolution timed out after {timeout}s") from None
    except OSError as e:
        # socket.gaierror 是 OSError 的子类
        raise ResolutionError(hostname, str(e) or type(e).__name__) from e

    addresses: List[IPAddress] = []
    for family, _, _, _, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        address = ipaddress.ip_address(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    logger.debug("Resolved %s to %s", hostname, [str(a) for a in addresses])
    return addresses
