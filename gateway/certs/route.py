"""Certificate download endpoint.

Serves files from the fixed certificate directory by bare filename. Checks run
in a fixed order and the first two never touch the filesystem:

1. suffix allow-list (``.crt``, ``.pem``)                 -> 403
2. containment: the normalised path must sit directly in the directory -> 403
3. existence                                              -> 404
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from gateway import vars as gateway_vars

logger = logging.getLogger("uvicorn.error")

router = APIRouter()

CERTS_DIR = gateway_vars.CERTS_DIR

ALLOWED_SUFFIXES = {
    ".crt": "application/x-x509-ca-cert",
    ".pem": "application/x-pem-file",
}


def allowed_suffix(filename: str) -> Optional[str]:
    suffix = os.path.splitext(filename)[1].lower()
    return suffix if suffix in ALLOWED_SUFFIXES else None


def resolve_asset_path(asset_dir: str, filename: str) -> Optional[str]:
    """Join ``filename`` onto ``asset_dir`` and refuse anything not directly inside it.

    Pure string manipulation: parent-directory segments, absolute names,
    subdirectories and NUL bytes all resolve to None.
    """
    if not filename or "\x00" in filename:
        return None
    root = os.path.normpath(os.path.abspath(asset_dir))
    candidate = os.path.normpath(os.path.join(root, filename))
    if os.path.dirname(candidate) != root:
        return None
    return candidate


@router.get("/{filename:path}")
async def serve_asset(filename: str):
    suffix = allowed_suffix(filename)
    if suffix is None:
        logger.warning(f"[Certs] Rejected non-certificate name: {filename!r}")
        raise HTTPException(status_code=403, detail="Forbidden")

    path = resolve_asset_path(CERTS_DIR, filename)
    if path is None:
        logger.warning(f"[Certs] Rejected name escaping the certificate directory: {filename!r}")
        raise HTTPException(status_code=403, detail="Forbidden")

    if not await asyncio.to_thread(os.path.isfile, path):
        raise HTTPException(status_code=404, detail="Not found")

    logger.info(f"[Certs] Serving {os.path.basename(path)}")
    return FileResponse(
        path,
        media_type=ALLOWED_SUFFIXES[suffix],
        filename=os.path.basename(path),
        content_disposition_type="attachment",
    )
