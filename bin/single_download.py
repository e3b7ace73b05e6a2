#!/usr/bin/env python3
"""
tileman Single Download Module

Per-tile transfer functions used by download_tiles.py:
- get_session(): thread-local requests session
- download_via_http_get(): GET one URL, read the whole body
- tile_filename(): local name for a tile (indexed or frame naming)
- save_tile(): write a payload to disk

None of these raise for per-tile problems. They return the error as a
string so the caller can record it and move on to the next tile.
"""

import os
import threading
from http import HTTPStatus
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter

from tile_sequence import SequenceItem


USER_AGENT = "tileman/1.0"

# Thread-local storage for per-thread HTTP sessions
_thread_local = threading.local()


def get_session() -> requests.Session:
    """Session owned by the calling worker thread."""
    session = getattr(_thread_local, "session", None)
    if session is None:
        session = requests.Session()
        # one request in flight per worker thread
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=1, max_retries=0)
        for scheme in ("http://", "https://"):
            session.mount(scheme, adapter)
        session.headers["User-Agent"] = USER_AGENT
        _thread_local.session = session
    return session


def download_via_http_get(
    url: str,
    timeout: Optional[float] = None,
) -> Tuple[Optional[bytes], Optional[int], Optional[str]]:
    """
    Download content via standard HTTP GET request.

    Args:
        url: URL to download
        timeout: Request timeout in seconds (None waits forever)

    Returns:
        Tuple of (content: bytes, status_code: int, error: str)
        - content is only set for a 200 response
        - status_code is None when the request never got a response
    """
    session = get_session()
    try:
        with session.get(url, timeout=timeout, stream=True) as resp:
            if resp.status_code != HTTPStatus.OK:
                try:
                    phrase = HTTPStatus(resp.status_code).phrase
                except ValueError:
                    phrase = "Unknown"
                return None, resp.status_code, f"HTTP {resp.status_code}: {phrase}"
            try:
                content = resp.content
            except requests.exceptions.RequestException as e:
                return None, resp.status_code, f"Read error: {e}"
            return content, resp.status_code, None
    except requests.exceptions.Timeout:
        return None, None, "Timeout"
    except requests.exceptions.ConnectionError as e:
        return None, None, f"Connection error: {e}"
    except requests.exceptions.RequestException as e:
        return None, None, f"Request error: {e}"


def tile_filename(item: SequenceItem, frame_naming: bool) -> str:
    """
    Local filename for a tile.

    Frame naming gives 00000.png, 00001.png, ... which frame encoders such
    as ffmpeg read as a contiguous image sequence. Otherwise the remote name
    is kept, prefixed with the sequence index.
    """
    if frame_naming:
        return f"{item.index:05d}.png"
    return f"{item.index}_{item.remote_filename}"


def save_tile(content: bytes, file_path: str) -> Tuple[int, Optional[str]]:
    """
    Write tile content to disk.

    Returns:
        Tuple of (bytes_written: int, error: str or None)
    """
    try:
        with open(file_path, "wb") as f:
            f.write(content)
        return len(content), None
    except OSError as e:
        return 0, f"Save error: {e}"
