"""Read-only file browser over ``FILES_ROOT``.

Every ``path`` parameter is relative to the root. Anything resolving outside
the root (parent segments, absolute paths, symlinks pointing elsewhere) is
refused with 403 before it is listed, described or downloaded.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from html import escape
from typing import List, Optional, Tuple
from urllib.parse import quote

import psutil
from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse, HTMLResponse
from pydantic import BaseModel

from gateway import vars as gateway_vars
from gateway.utils.html import link, render_page

logger = logging.getLogger("uvicorn.error")

router = APIRouter()

FILES_ROOT = gateway_vars.FILES_ROOT
MAX_DOWNLOAD_SIZE = gateway_vars.MAX_DOWNLOAD_SIZE


class FileInfo(BaseModel):
    name: str
    path: str
    size: int
    modified: datetime
    is_directory: bool


class FileStats(BaseModel):
    root_path: str
    disk_used: int
    disk_total: int
    disk_percent: float
    file_count: int
    dir_count: int


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[index]}"


def resolve_within_root(root: str, relative: str) -> Optional[str]:
    """Map a root-relative path to an absolute one, or None if it escapes the root."""
    if "\x00" in relative:
        return None
    real_root = os.path.realpath(root)
    candidate = os.path.realpath(os.path.join(real_root, relative.lstrip("/")))
    if candidate != real_root and not candidate.startswith(real_root + os.sep):
        return None
    return candidate


def _relative(root: str, path: str) -> str:
    rel = os.path.relpath(path, os.path.realpath(root))
    return "" if rel == "." else rel.replace(os.sep, "/")


def _existing_path(relative: str) -> str:
    path = resolve_within_root(FILES_ROOT, relative)
    if path is None:
        logger.warning(f"[Files] Rejected path outside the file root: {relative!r}")
        raise HTTPException(status_code=403, detail="Access denied")
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Not found")
    return path


async def _require(relative: str) -> str:
    return await asyncio.to_thread(_existing_path, relative)


def _info(path: str) -> FileInfo:
    stat = os.stat(path)
    return FileInfo(
        name=os.path.basename(path) or "/",
        path=_relative(FILES_ROOT, path),
        size=stat.st_size,
        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        is_directory=os.path.isdir(path),
    )


def list_directory(path: str) -> List[FileInfo]:
    """Directory entries, directories first, then case-insensitive by name."""
    entries = []
    for name in os.listdir(path):
        try:
            entries.append(_info(os.path.join(path, name)))
        except OSError as e:
            # Broken symlinks and entries removed mid-listing
            logger.debug(f"[Files] Skipping {name!r}: {e}")
    entries.sort(key=lambda e: (not e.is_directory, e.name.lower()))
    return entries


def _breadcrumbs(relative: str) -> str:
    crumbs = [link("./?path=", "files")]
    parts = [p for p in relative.split("/") if p]
    for i, part in enumerate(parts):
        crumbs.append(link(f"./?path={quote('/'.join(parts[: i + 1]))}", part))
    return " / ".join(crumbs)


def render_listing(relative: str, entries: List[FileInfo]) -> str:
    rows = []
    for entry in entries:
        target = quote(entry.path)
        if entry.is_directory:
            name = link(f"./?path={target}", entry.name + "/")
            size = "-"
        else:
            name = link(f"download?path={target}", entry.name)
            size = format_bytes(entry.size)
        rows.append(
            f"        <tr><td>{name}</td><td>{size}</td>"
            f"<td>{entry.modified:%Y-%m-%d %H:%M}</td></tr>"
        )
    body = "\n".join(
        [
            "      <h1>OzNet Files</h1>",
            f"      <p>{_breadcrumbs(relative)}</p>",
            "      <table>",
            "        <tr><th>Name</th><th>Size</th><th>Modified</th></tr>",
            *rows,
            "      </table>",
            f"      <p>{link('stats', 'Statistics')}</p>",
        ]
    )
    if not entries:
        body += "\n      <p><em>This directory is empty.</em></p>"
    return render_page(f"Files - /{relative}", body)


def _listing(target: str) -> Tuple[str, List[FileInfo]]:
    if not os.path.isdir(target):
        raise HTTPException(status_code=400, detail="Not a directory")
    return _relative(FILES_ROOT, target), list_directory(target)


def _download_size(target: str) -> int:
    if not os.path.isfile(target):
        raise HTTPException(status_code=400, detail="Not a file")
    return os.path.getsize(target)


@router.get("/")
async def browse(path: str = Query("")):
    target = await _require(path)
    relative, entries = await asyncio.to_thread(_listing, target)
    return HTMLResponse(render_listing(relative, entries))


@router.get("/download")
async def download(path: str = Query("")):
    if not path:
        raise HTTPException(status_code=400, detail="Path required")
    target = await _require(path)
    size = await asyncio.to_thread(_download_size, target)
    if size > MAX_DOWNLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")
    logger.info(f"[Files] Download {path} ({format_bytes(size)})")
    return FileResponse(
        target,
        filename=os.path.basename(target),
        content_disposition_type="attachment",
    )


@router.get("/api/info", response_model=FileInfo)
async def info(path: str = Query("")):
    target = await _require(path)
    return await asyncio.to_thread(_info, target)


def collect_stats(root: str) -> FileStats:
    """Disk usage of the volume holding ``root`` plus a recursive entry count.

    The root itself counts as a directory.
    """
    usage = psutil.disk_usage(root)
    file_count = 0
    dir_count = 0
    for _dirpath, _dirnames, filenames in os.walk(root):
        dir_count += 1
        file_count += len(filenames)
    return FileStats(
        root_path=root,
        disk_used=usage.used,
        disk_total=usage.total,
        disk_percent=usage.percent,
        file_count=file_count,
        dir_count=dir_count,
    )


def render_stats(stats: Optional[FileStats]) -> str:
    if stats is None:
        disk, files, dirs = "Error", 0, 0
    else:
        disk = (
            f"{format_bytes(stats.disk_used)}/{format_bytes(stats.disk_total)}"
            f" ({stats.disk_percent:.0f}%)"
        )
        files, dirs = stats.file_count, stats.dir_count
    body = "\n".join(
        [
            "      <h1>Statistics - OzNet Files</h1>",
            "      <ul>",
            f"        <li>Root: <code>{escape(FILES_ROOT)}</code></li>",
            f"        <li>Disk usage: {escape(disk)}</li>",
            f"        <li>Files: {files}</li>",
            f"        <li>Directories: {dirs}</li>",
            "      </ul>",
            f"      <p>{link('./', 'Back to files')}</p>",
        ]
    )
    return render_page("Statistics - OzNet Files", body)


@router.get("/stats")
async def stats():
    try:
        result = await asyncio.to_thread(collect_stats, FILES_ROOT)
    except OSError as e:
        logger.warning(f"[Files] Failed to collect statistics for {FILES_ROOT}: {e}")
        result = None
    return HTMLResponse(render_stats(result))


@router.get("/api/stats", response_model=FileStats)
async def stats_json():
    try:
        return await asyncio.to_thread(collect_stats, FILES_ROOT)
    except OSError as e:
        logger.warning(f"[Files] Failed to collect statistics for {FILES_ROOT}: {e}")
        raise HTTPException(status_code=500, detail="Statistics unavailable")
