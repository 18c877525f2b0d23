# 18.10.26

import logging
from typing import Mapping, Optional


# Logic
from ..utils.exceptions import SegmentRejected


# Variable
logger = logging.getLogger(__name__)

AD_SERVER_SIGNATURES = [
    "DCLK-AdSvr",
    "DoubleClick",
    "googlesyndication",
    "googleads",
    "adservice",
    "adnxs",
    "amazon-adsystem",
]

INVALID_CONTENT_TYPES = [
    "text/html",
    "text/javascript",
    "application/javascript",
    "application/json",
    "text/css",
    "text/xml",
    "application/xml",
    "image/gif",
    "image/png",
    "image/jpeg",
    "image/webp",
]

HTML_PREFIXES = ("<!doctype", "<html", "<head", "<script", "<body", "<meta", "<iframe", "<div")
JS_PREFIXES = ("var ", "function ", "(function", "window.", "document.", '"use strict"', "'use strict'")
ISO_BOXES = (b"ftyp", b"moov", b"moof", b"mdat", b"styp", b"sidx", b"emsg", b"prft", b"free", b"skip")


def check_headers(headers: Mapping[str, str]) -> None:
    content_type = (headers.get("content-type") or "").lower().strip()
    for invalid in INVALID_CONTENT_TYPES:
        if content_type.startswith(invalid):
            raise SegmentRejected("invalid_content_type", content_type)

    header_blob = " ".join(f"{k}: {v}" for k, v in headers.items()).lower()
    for signature in AD_SERVER_SIGNATURES:
        if signature.lower() in header_blob:
            raise SegmentRejected("ad_server", signature)


def sniff_container(data: bytes) -> Optional[str]:
    """Positive identification of common segment containers, else None."""
    if not data:
        return None
    if data[0] == 0x47:
        return "mpegts"
    if len(data) >= 8 and data[4:8] in ISO_BOXES:
        return "fmp4"
    if data[:3] == b"ID3":
        return "id3"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    return None


def check_payload(data: bytes, min_bytes: int = 512, encrypted: bool = False) -> Optional[str]:
    """Raise SegmentRejected for bodies that are clearly not media; return the sniffed container."""
    if len(data) < min_bytes:
        raise SegmentRejected("too_small", f"{len(data)} bytes (min: {min_bytes})")

    if encrypted:
        return None

    head = data[:512].decode("latin-1").strip().lower()
    if head.startswith(HTML_PREFIXES):
        raise SegmentRejected("html_response", "response is HTML")
    if head.startswith(JS_PREFIXES):
        raise SegmentRejected("js_response", "response is JavaScript")
    if head.startswith(("{", "[")) and len(data) < 10000:
        raise SegmentRejected("json_response", "response is small JSON")

    container = sniff_container(data)
    if container is None:
        logger.debug(f"Unrecognised segment signature {data[:8].hex()}")
    return container
