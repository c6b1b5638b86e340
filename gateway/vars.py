import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "oznet-gateway")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = os.environ.get("PORT", "3000")

# Public identity of the gateway, used for forwarded headers, redirects and links
PUBLIC_SCHEME = os.environ.get("PUBLIC_SCHEME", "https").strip().lower()
PUBLIC_DOMAIN = os.environ.get("PUBLIC_DOMAIN", "oznet").strip().lower().strip(".")

CERTS_DIR = os.environ.get("CERTS_DIR", "/var/oznet/certs")
FILES_ROOT = os.environ.get("FILES_ROOT", "/var/oznet/files")
MAX_DOWNLOAD_SIZE = int(os.getenv("MAX_DOWNLOAD_SIZE", str(1024 * 1024 * 1024)))

PROXY_TIMEOUT = int(os.environ.get("PROXY_TIMEOUT", "300"))
GATEWAY_UPSTREAMS = os.environ.get("GATEWAY_UPSTREAMS", "3dprint=http://127.0.0.1:5000")
GATEWAY_DEV_ROUTES = os.getenv("GATEWAY_DEV_ROUTES", "true").lower() == "true"

HUB_REFRESH_SECONDS = float(os.getenv("HUB_REFRESH_SECONDS", "10"))
HUB_LOG_UNIT = os.getenv("HUB_LOG_UNIT", "oznet")
HUB_LOG_LINES = int(os.getenv("HUB_LOG_LINES", "50"))

ZEROTIER_NETWORK_ID = os.getenv("ZEROTIER_NETWORK_ID", "9bee8941b563441a")
ZEROTIER_NETWORK_NAME = os.getenv("ZEROTIER_NETWORK_NAME", "Oz Network")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _parse_upstreams(raw: str) -> list[tuple[str, str, dict]]:
    """Split ``label=url[;flag...]`` entries into (label, url, flags) triples.

    Flags are ``keep-host`` and ``proto=<scheme>``. Entries without ``=`` are
    returned with an empty URL so the route table builder can reject them with
    a descriptive message instead of silently dropping them.
    """
    entries: list[tuple[str, str, dict]] = []
    if not raw:
        return entries
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        label, _, rest = entry.partition("=")
        parts = [p.strip() for p in rest.split(";")]
        url, flag_parts = parts[0], parts[1:]
        flags: dict = {}
        for flag in flag_parts:
            if not flag:
                continue
            key, sep, val = flag.partition("=")
            flags[key.strip().lower()] = val.strip() if sep else True
        entries.append((label.strip().lower(), url, flags))
    return entries


UPSTREAMS = _parse_upstreams(GATEWAY_UPSTREAMS)
