"""Delivery of one serialized registration payload to one resolved address."""
import asyncio
import ipaddress
import logging
from enum import Enum
from typing import Optional

import httpx

from metricsys_agent.config import REQUEST_TIMEOUT
from metricsys_agent.events import RegistrationEventSink

logger = logging.getLogger(__name__)

REGISTRATION_ENDPOINT = "/register"
# Reserved for the receiving endpoint; the agent sends the hostname in the body.
REGISTRATION_HOSTNAME_PARAMETER = "hostname"
# Status reported when no HTTP response was received at all.
NO_STATUS = -1


class DeliveryOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def build_registration_uri(address, port: int) -> str:
    """Build ``http://{address}:{port}/register``; IPv6 literals are bracketed."""
    if not isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        address = ipaddress.ip_address(address)
    host = f"[{address}]" if address.version == 6 else str(address)
    return f"http://{host}:{port}{REGISTRATION_ENDPOINT}"


def create_transport(timeout: float = REQUEST_TIMEOUT,
                     transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Shared outbound client: pooled keep-alive connections, compressed
    responses accepted, redirects never followed."""
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=False,
        headers={"Accept-Encoding": "gzip, deflate"},
        limits=httpx.Limits(max_keepalive_connections=20, keepalive_expiry=timeout * 2),
        transport=transport,
    )


async def deliver(
    client: httpx.AsyncClient,
    uri: str,
    payload: bytes,
    events: RegistrationEventSink,
    content_type: str = "application/octet-stream",
) -> DeliveryOutcome:
    """POST the payload to ``uri`` and report the outcome to ``events``.

    Only the response headers are awaited. Cancellation and a client closed by
    agent shutdown yield CANCELLED and report nothing.
    """
    if client.is_closed:
        return DeliveryOutcome.CANCELLED

    request = client.build_request(
        "POST",
        uri,
        content=payload,
        headers={"Connection": "Keep-Alive", "Content-Type": content_type},
    )
    try:
        response = await client.send(request, stream=True)
    except asyncio.CancelledError:
        logger.debug("Registration with %s cancelled", uri)
        return DeliveryOutcome.CANCELLED
    except httpx.HTTPError as e:
        events.registration_failed(uri, NO_STATUS, str(e) or type(e).__name__)
        return DeliveryOutcome.FAILED
    except RuntimeError:
        # httpx raises RuntimeError when the client was closed mid-flight
        if client.is_closed:
            return DeliveryOutcome.CANCELLED
        raise

    try:
        if response.is_success:
            events.registration_succeeded(uri)
            return DeliveryOutcome.SUCCEEDED
        events.registration_failed(uri, response.status_code, response.reason_phrase)
        return DeliveryOutcome.FAILED
    finally:
        await response.aclose()
