import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Tuple

from pydantic import BaseModel

from gateway.services.metrics import (
    STATUS_RUNNING,
    STATUS_UNKNOWN,
    MonitoredService,
    StatusProvider,
)


class ServiceStatus(BaseModel):
    id: str
    name: str
    description: str
    type: str
    domain: str | None = None
    port: int | None = None
    status: str


@dataclass(frozen=True)
class ServiceSnapshot:
    services: Tuple[ServiceStatus, ...]
    taken_at: float

    @property
    def active_count(self) -> int:
        return sum(1 for s in self.services if s.status == STATUS_RUNNING)


def _with_status(service: MonitoredService, status: str) -> ServiceStatus:
    return ServiceStatus(
        id=service.id,
        name=service.name,
        description=service.description,
        type=service.type,
        domain=service.domain,
        port=service.port,
        status=status,
    )


class ServiceRegistry:
    """Owns the current service-status snapshot and refreshes it when stale.

    Callers receive the immutable snapshot itself; nothing outside the
    registry ever mutates service state.
    """

    def __init__(
        self,
        services: Iterable[MonitoredService],
        provider: StatusProvider,
        max_age: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.services = tuple(services)
        self.provider = provider
        self.max_age = max_age
        self._clock = clock
        self._lock = asyncio.Lock()
        self._snapshot = ServiceSnapshot(
            services=tuple(_with_status(s, STATUS_UNKNOWN) for s in self.services),
            taken_at=float("-inf"),
        )

    def _is_fresh(self) -> bool:
        return self._clock() - self._snapshot.taken_at < self.max_age

    async def refresh(self) -> ServiceSnapshot:
        statuses = await asyncio.gather(*(self.provider.status(s) for s in self.services))
        self._snapshot = ServiceSnapshot(
            services=tuple(_with_status(s, st) for s, st in zip(self.services, statuses)),
            taken_at=self._clock(),
        )
        return self._snapshot

    async def snapshot(self) -> ServiceSnapshot:
        if self._is_fresh():
            return self._snapshot
        async with self._lock:
            # Another request may have refreshed while we waited
            if self._is_fresh():
                return self._snapshot
            return await self.refresh()
