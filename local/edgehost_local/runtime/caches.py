"""No-op cache API.

There is no HTTP cache backing locally, so every lookup misses and every
store is accepted and dropped.
"""
from typing import Any, Optional


class NoopCache:

    async def match(self, request: Any, **options) -> Optional[Any]:
        return None

    async def put(self, request: Any, response: Any) -> None:
        return None

    async def delete(self, request: Any, **options) -> bool:
        return False


class NoopCaches:

    def __init__(self):
        self.default = NoopCache()

    async def open(self, cache_name: str) -> NoopCache:
        return NoopCache()
