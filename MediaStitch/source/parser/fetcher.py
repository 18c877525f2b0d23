# 18.10.26

import logging
from typing import Dict, Optional, Tuple


# External libraries
import httpx
from curl_cffi.requests import RequestsError


# Internal utilities
from MediaStitch.utils import config_manager
from MediaStitch.utils.http_client import create_client, create_client_curl, get_headers


# Logic
from ..utils.exceptions import FatalManifest


# Variable
logger = logging.getLogger(__name__)


class ManifestFetcher:
    def __init__(self, headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.headers = headers or get_headers()
        self.timeout = timeout or config_manager.config.get_int('REQUESTS', 'timeout', default=30)
        self.transport = transport
        self.impersonate = config_manager.config.get('REQUESTS', 'impersonate')

    def fetch(self, url: str) -> Tuple[str, str]:
        """Return the manifest text and the final URL after redirects."""
        logger.info(f"Fetching manifest: {url}")

        if self.impersonate and self.transport is None:
            text, final_url = self._fetch_curl(url)
        else:
            text, final_url = self._fetch_httpx(url)

        if not text or not text.strip():
            raise FatalManifest(f"Empty manifest at {url}")

        if final_url != url:
            logger.info(f"Manifest redirected to {final_url}")
        return text, final_url

    def _fetch_httpx(self, url: str) -> Tuple[str, str]:
        try:
            with create_client(headers=self.headers, timeout=self.timeout, follow_redirects=True, transport=self.transport) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.text, str(response.url)

        except httpx.HTTPStatusError as e:
            raise FatalManifest(f"HTTP {e.response.status_code} fetching manifest {url}") from e
        except httpx.HTTPError as e:
            raise FatalManifest(f"Failed to fetch manifest {url}: {e}") from e

    def _fetch_curl(self, url: str) -> Tuple[str, str]:
        session = create_client_curl(headers=self.headers, timeout=self.timeout, impersonate=self.impersonate)
        try:
            response = session.get(url, allow_redirects=True)
            if response.status_code >= 400:
                raise FatalManifest(f"HTTP {response.status_code} fetching manifest {url}")
            return response.text, str(response.url)

        except RequestsError as e:
            raise FatalManifest(f"Failed to fetch manifest {url}: {e}") from e
        finally:
            session.close()
