"""Process-wide external IP lookup."""
import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

TRACE_URL = "https://cloudflare.com/cdn-cgi/trace"

_IP_PATTERN = re.compile(r"ip=([^\s]*)")


async def fetch_external_ip(transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """Ask the trace endpoint which IP our requests come from."""
    logger.info("fetchExternalIp: Fetching...")
    start = time.monotonic()
    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get(TRACE_URL, timeout=10.0)
        response.raise_for_status()
    trace = response.text
    match = _IP_PATTERN.search(trace)
    if not match:
        raise ValueError(f"fetchExternalIp: Unexpected trace: {trace}")
    external_ip = match.group(1)
    logger.info(f"fetchExternalIp: Determined to be {external_ip} in {int((time.monotonic() - start) * 1000)}ms")
    return external_ip


class ExternalIpCache:
    """Single-slot cache: unset -> pending -> resolved.

    Concurrent first callers share one fetch. A failed fetch returns the slot
    to unset so a later request can retry; a resolved value is never refetched.
    """

    def __init__(
        self,
        fetcher: Optional[Callable[[], Awaitable[str]]] = None,
        value: Optional[str] = None,
    ):
        self._fetcher = fetcher or fetch_external_ip
        self._value = value
        self._pending: Optional[asyncio.Future] = None

    @property
    def state(self) -> str:
        if self._value is not None:
            return "resolved"
        if self._pending is not None:
            return "pending"
        return "unset"

    async def get(self) -> str:
        if self._value is not None:
            return self._value
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._fetcher())
        pending = self._pending
        try:
            # Shielded so a cancelled request doesn't cancel the shared fetch
            value = await asyncio.shield(pending)
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise
        self._value = value
        self._pending = None
        return value
