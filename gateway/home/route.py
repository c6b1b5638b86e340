from html import escape

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from gateway import vars as gateway_vars
from gateway.services.catalog import SERVICE_CATALOG
from gateway.utils.html import link, render_page

router = APIRouter()


@router.get("/")
async def home():
    items = []
    for entry in SERVICE_CATALOG:
        name = link(entry.url, entry.domain) if entry.status == "active" else escape(entry.domain)
        items.append(
            f"        <li>{name} - {escape(entry.description)} <small>({escape(entry.status)})</small></li>"
        )
    body = "\n".join(
        [
            "      <h1>OzNet - Private Network</h1>",
            "      <ul>",
            *items,
            "      </ul>",
            f"      <p>{link('setup', 'Network setup')} | {link('docs', 'Documentation')}</p>",
        ]
    )
    return HTMLResponse(render_page("OzNet - Private Network", body))


@router.get("/setup")
async def setup():
    network_id = escape(gateway_vars.ZEROTIER_NETWORK_ID)
    network_name = escape(gateway_vars.ZEROTIER_NETWORK_NAME)
    body = "\n".join(
        [
            "      <h1>Network setup</h1>",
            f"      <p>Join the <strong>{network_name}</strong> ZeroTier network to reach OzNet services.</p>",
            "      <ol>",
            "        <li>Install the ZeroTier client.</li>",
            f"        <li>Join network <code>{network_id}</code>.</li>",
            "        <li>Wait for an administrator to authorize the device.</li>",
            "        <li>Install the OzNet CA certificate from <code>/certs/</code>.</li>",
            "      </ol>",
        ]
    )
    return HTMLResponse(render_page("Setup - OzNet", body))


@router.get("/docs")
async def docs():
    body = "\n".join(
        [
            "      <h1>Documentation</h1>",
            "      <p>Every service is published as a subdomain of the private network domain.",
            "      Web applications run inside the gateway; external services such as OctoPrint",
            "      are reached through its reverse proxy.</p>",
        ]
    )
    return HTMLResponse(render_page("Documentation - OzNet", body))
