"""Service dashboard.

Renders the registry's current snapshot and host stats. The snapshot is
received by value from ``ServiceRegistry``; the dashboard never mutates it.
"""

import logging
from html import escape
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from gateway import vars as gateway_vars
from gateway.services.catalog import public_domain
from gateway.services.metrics import (
    HostStatusProvider,
    JournalLogProvider,
    LogProvider,
    LogsUnavailable,
    MetricsProvider,
    MonitoredService,
    PsutilMetricsProvider,
    SystemStats,
)
from gateway.services.registry import ServiceRegistry, ServiceSnapshot, ServiceStatus
from gateway.utils.html import link, render_page

logger = logging.getLogger("uvicorn.error")

router = APIRouter()

_web_port = int(gateway_vars.PORT) if str(gateway_vars.PORT).isdigit() else None

MONITORED_SERVICES = (
    MonitoredService(
        id="oznet-home",
        name="OzNet Home",
        description="Main documentation server",
        domain=public_domain("home"),
        port=_web_port,
    ),
    MonitoredService(
        id="oznet-hub",
        name="OzNet Hub",
        description="Service management",
        domain=public_domain("hub"),
        port=_web_port,
    ),
    MonitoredService(
        id="oznet-files",
        name="OzNet Files",
        description="File server",
        domain=public_domain("files"),
        port=_web_port,
    ),
    MonitoredService(
        id="dnsmasq",
        name="DNS Server",
        description="Internal DNS server",
        type="system",
        port=53,
        unit="dnsmasq",
    ),
    MonitoredService(
        id="zerotier",
        name="ZeroTier",
        description="VPN service",
        type="system",
        unit="zerotier-one",
    ),
)

_registry = ServiceRegistry(
    MONITORED_SERVICES, HostStatusProvider(), gateway_vars.HUB_REFRESH_SECONDS
)
_metrics_provider = PsutilMetricsProvider()
_log_provider = JournalLogProvider()


class LogTail(BaseModel):
    unit: str
    lines: int
    logs: str


def get_registry() -> ServiceRegistry:
    return _registry


def get_metrics_provider() -> MetricsProvider:
    return _metrics_provider


def get_log_provider() -> LogProvider:
    return _log_provider


def render_dashboard(snapshot: ServiceSnapshot) -> str:
    rows = []
    for service in snapshot.services:
        domain = link(f"{gateway_vars.PUBLIC_SCHEME}://{service.domain}", service.domain) if service.domain else "-"
        rows.append(
            "        <tr>"
            f"<td>{escape(service.name)}</td>"
            f"<td>{escape(service.description)}</td>"
            f"<td>{domain}</td>"
            f"<td>{escape(service.type)}</td>"
            f"<td>{escape(service.status)}</td>"
            "</tr>"
        )
    body = "\n".join(
        [
            "      <h1>Hub - Service Management</h1>",
            f"      <p>{snapshot.active_count} of {len(snapshot.services)} services running.</p>",
            "      <table>",
            "        <tr><th>Service</th><th>Description</th><th>Domain</th><th>Type</th><th>Status</th></tr>",
            *rows,
            "      </table>",
            f"      <p>{link('system', 'System status')} | {link('logs', 'Gateway logs')}</p>",
        ]
    )
    return render_page("Hub - Service Management", body)


def render_logs(unit: str, logs: str) -> str:
    body = "\n".join(
        [
            f"      <h1>Logs - {escape(unit)}</h1>",
            f"      <pre>{escape(logs)}</pre>",
            f"      <p>{link('./', 'Back to the dashboard')}</p>",
        ]
    )
    return render_page(f"Logs - {unit}", body)


def render_system(stats: SystemStats) -> str:
    body = "\n".join(
        [
            "      <h1>System status</h1>",
            "      <ul>",
            f"        <li>CPU: {stats.cpu:.1f}%</li>",
            f"        <li>Memory: {stats.memory:.1f}%</li>",
            f"        <li>Disk: {stats.disk:.1f}%</li>",
            f"        <li>Network: {escape(stats.network or '-')}</li>",
            "      </ul>",
        ]
    )
    return render_page("System status", body)


@router.get("/")
async def dashboard(registry: ServiceRegistry = Depends(get_registry)):
    snapshot = await registry.snapshot()
    return HTMLResponse(render_dashboard(snapshot))


@router.get("/api/services", response_model=List[ServiceStatus])
async def list_services(registry: ServiceRegistry = Depends(get_registry)):
    snapshot = await registry.snapshot()
    return list(snapshot.services)


@router.get("/api/system", response_model=SystemStats)
async def system_stats(provider: MetricsProvider = Depends(get_metrics_provider)):
    return await provider.system_stats()


@router.get("/system")
async def system(provider: MetricsProvider = Depends(get_metrics_provider)):
    try:
        stats = await provider.system_stats()
    except Exception as e:
        logger.warning(f"[Hub] Failed to collect system stats: {e}")
        stats = SystemStats(cpu=0, memory=0, disk=0, network="Error")
    return HTMLResponse(render_system(stats))


@router.get("/logs")
async def logs(provider: LogProvider = Depends(get_log_provider)):
    unit = gateway_vars.HUB_LOG_UNIT
    try:
        text = await provider.recent_logs(unit, gateway_vars.HUB_LOG_LINES)
    except LogsUnavailable as e:
        logger.warning(f"[Hub] Failed to read logs for {unit}: {e}")
        text = f"Failed to read logs: {e}"
    return HTMLResponse(render_logs(unit, text))


@router.get("/api/logs", response_model=LogTail)
async def logs_json(provider: LogProvider = Depends(get_log_provider)):
    unit = gateway_vars.HUB_LOG_UNIT
    lines = gateway_vars.HUB_LOG_LINES
    try:
        text = await provider.recent_logs(unit, lines)
    except LogsUnavailable as e:
        logger.warning(f"[Hub] Failed to read logs for {unit}: {e}")
        raise HTTPException(status_code=503, detail="Logs unavailable")
    return LogTail(unit=unit, lines=lines, logs=text)
