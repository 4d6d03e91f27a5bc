from __future__ import annotations

import html
import logging
import re
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen


logger = logging.getLogger(__name__)

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.I | re.S)
OG_IMAGE_RE = re.compile(
    r"<meta[^>]+property=[\"']og:image[\"'][^>]+content=[\"']([^\"']+)[\"']", re.I
)
MAX_BYTES = 65536


def hostname_title(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    host = parsed.netloc or url
    return host[4:] if host.startswith("www.") else host


def _charset_from_headers(headers: Any) -> str:
    ctype = headers.get("Content-Type") or headers.get("content-type") or ""
    m = re.search(r"charset=([\w\-\d_]+)", ctype, flags=re.I)
    return (m.group(1) if m else "").strip()


def _decode(data: bytes, charset_hint: str) -> str:
    for enc in (charset_hint, "utf-8", "windows-1252", "latin-1"):
        if not enc:
            continue
        try:
            return data.decode(enc, errors="ignore")
        except LookupError:
            continue
    return data.decode("utf-8", errors="ignore")


def fetch_metadata(url: str, timeout: float = 5.0) -> dict[str, Any]:
    """Best-effort page title and preview image for `url`.

    Falls back to the hostname for the title; never raises.
    """
    fallback = {"title": hostname_title(url)}
    if urlparse(url).scheme not in ("http", "https"):
        return fallback
    try:
        req = Request(url, headers={"User-Agent": "Mozilla/5.0 (canvasflow-metadata)"})
        with urlopen(req, timeout=timeout) as resp:
            raw = resp.read(MAX_BYTES)
            charset = _charset_from_headers(resp.headers)
    except HTTPError as exc:
        logger.debug("Metadata fetch for %s returned %s", url, exc.code)
        return fallback
    except (URLError, OSError, ValueError) as exc:
        logger.debug("Metadata fetch for %s failed: %s", url, exc)
        return fallback

    text = _decode(raw, charset)
    out = dict(fallback)
    m = TITLE_RE.search(text)
    if m:
        title = re.sub(r"\s+", " ", html.unescape(m.group(1))).strip()
        if title:
            out["title"] = title
    image = OG_IMAGE_RE.search(text)
    if image:
        out["thumbnail_url"] = html.unescape(image.group(1)).strip()
    return out
