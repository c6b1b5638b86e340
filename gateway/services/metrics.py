"""Host-level probes used by the hub dashboard.

Both probes sit behind small interfaces so the dashboard (and its tests) never
depend on shell tools or on the host the gateway runs on.
"""

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from typing import Optional

import psutil
from pydantic import BaseModel

logger = logging.getLogger("uvicorn.error")

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown"


class MonitoredService(BaseModel):
    id: str
    name: str
    description: str
    type: str = "web"
    domain: Optional[str] = None
    port: Optional[int] = None
    unit: Optional[str] = None


class SystemStats(BaseModel):
    cpu: float
    memory: float
    disk: float
    network: str


class StatusProvider(ABC):
    @abstractmethod
    async def status(self, service: MonitoredService) -> str:
        pass


class MetricsProvider(ABC):
    @abstractmethod
    async def system_stats(self) -> SystemStats:
        pass


class LogProvider(ABC):
    @abstractmethod
    async def recent_logs(self, unit: str, lines: int) -> str:
        """Return the last ``lines`` log lines of ``unit``.

        Raises:
            LogsUnavailable: if the logs cannot be read.
        """


class LogsUnavailable(RuntimeError):
    pass


class HostStatusProvider(StatusProvider):
    """``systemctl is-active`` for system units, a TCP probe for web services."""

    def __init__(self, probe_host: str = "127.0.0.1", timeout: float = 2.0):
        self.probe_host = probe_host
        self.timeout = timeout

    async def status(self, service: MonitoredService) -> str:
        if service.unit:
            return await self._unit_status(service.unit)
        if service.port:
            return await self._port_status(service.port)
        return STATUS_UNKNOWN

    async def _unit_status(self, unit: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "systemctl",
                "is-active",
                unit,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[Hub] Could not query unit {unit}: {e}")
            return STATUS_ERROR
        return STATUS_RUNNING if stdout.decode().strip() == "active" else STATUS_STOPPED

    async def _port_status(self, port: int) -> str:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, port), self.timeout
            )
        except (OSError, asyncio.TimeoutError):
            return STATUS_STOPPED
        writer.close()
        await writer.wait_closed()
        return STATUS_RUNNING


def _primary_ipv4() -> str:
    for name, addresses in psutil.net_if_addrs().items():
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith("127."):
                return address.address
    return ""


class PsutilMetricsProvider(MetricsProvider):
    def __init__(self, disk_path: str = "/"):
        self.disk_path = disk_path

    def _collect(self) -> SystemStats:
        return SystemStats(
            cpu=psutil.cpu_percent(interval=None),
            memory=psutil.virtual_memory().percent,
            disk=psutil.disk_usage(self.disk_path).percent,
            network=_primary_ipv4(),
        )

    async def system_stats(self) -> SystemStats:
        return await asyncio.to_thread(self._collect)


class JournalLogProvider(LogProvider):
    """Reads a unit's recent lines with ``journalctl``."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def recent_logs(self, unit: str, lines: int) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "journalctl",
                "-u",
                unit,
                "--no-pager",
                "-n",
                str(lines),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LogsUnavailable(f"could not run journalctl: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise LogsUnavailable(f"journalctl did not answer within {self.timeout}s") from e
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise LogsUnavailable(message or f"journalctl exited with {proc.returncode}")
        return stdout.decode(errors="replace")
