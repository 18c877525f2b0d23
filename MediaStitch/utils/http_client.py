# 18.10.26

import logging
from typing import Dict, Optional


# External libraries
import httpx
from curl_cffi import requests as curl_requests


# Internal utilities
from .config_json import config_manager


# Variable
logger = logging.getLogger(__name__)
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/129.0.0.0 Safari/537.36"


def get_userAgent() -> str:
    user_agent = config_manager.config.get("REQUESTS", "user_agent")
    return user_agent or DEFAULT_USER_AGENT


def get_headers() -> Dict[str, str]:
    return {
        "User-Agent": get_userAgent(),
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
    }


def create_client(headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None, follow_redirects: bool = True, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Build an httpx client with the configured timeout and TLS verification."""
    if timeout is None:
        timeout = config_manager.config.get_int("REQUESTS", "timeout", default=30)

    return httpx.Client(
        headers=headers or get_headers(),
        timeout=timeout,
        follow_redirects=follow_redirects,
        verify=config_manager.config.get_bool("REQUESTS", "verify", default=True),
        transport=transport,
    )


def create_client_curl(headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None, impersonate: Optional[str] = None) -> curl_requests.Session:
    """Build a curl_cffi session impersonating a browser TLS fingerprint."""
    if timeout is None:
        timeout = config_manager.config.get_int("REQUESTS", "timeout", default=30)
    impersonate = impersonate or config_manager.config.get("REQUESTS", "impersonate") or "chrome"

    return curl_requests.Session(
        headers=headers or get_headers(),
        timeout=timeout,
        impersonate=impersonate,
        verify=config_manager.config.get_bool("REQUESTS", "verify", default=True),
    )
