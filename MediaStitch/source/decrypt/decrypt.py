# 18.10.26

import base64
import logging
import binascii
import threading
from typing import Dict, Iterable, Optional, Union
from urllib.parse import unquote


# External libraries
import httpx
from Cryptodome.Cipher import AES
from Cryptodome.Util.Padding import unpad


# Internal utilities
from MediaStitch.utils import config_manager
from MediaStitch.utils.http_client import create_client, get_headers


# Logic
from ..utils.object import EncryptionKey, KeyRef, Segment
from ..utils.exceptions import FatalKeyResolution, SegmentRejected


# Variable
logger = logging.getLogger(__name__)
TIMEOUT = config_manager.config.get_int('REQUESTS', 'timeout', default=30)
SUPPORTED_METHODS = ('AES-128',)
DRM_SCHEMES = ('skd://', 'urn:uuid:')


def parse_key(value: Union[str, bytes]) -> bytes:
    """Accept 16 raw bytes or a 32-digit hex string (optionally 0x-prefixed)."""
    if isinstance(value, bytes):
        return value
    text = value.strip()
    if text.lower().startswith('0x'):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise FatalKeyResolution('<preset>', f"not a hex key: {e}") from e


class KeyCache:
    """Keys resolved for one download job, by URI."""

    def __init__(self):
        self._keys: Dict[str, EncryptionKey] = {}
        self._lock = threading.Lock()

    def get(self, uri: str) -> Optional[EncryptionKey]:
        with self._lock:
            return self._keys.get(uri)

    def put(self, key: EncryptionKey) -> None:
        with self._lock:
            self._keys[key.uri] = key

    def __contains__(self, uri: str) -> bool:
        with self._lock:
            return uri in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class KeyResolver:
    def __init__(self, headers: Optional[Dict[str, str]] = None, preset_key: Optional[Union[str, bytes]] = None, transport: Optional[httpx.BaseTransport] = None, cache: Optional[KeyCache] = None):
        self.headers = headers or get_headers()
        self.preset_key = parse_key(preset_key) if preset_key else None
        self.transport = transport
        self.cache = cache or KeyCache()

    def resolve_all(self, segments: Iterable[Segment]) -> KeyCache:
        """Resolve every distinct key referenced by ``segments`` exactly once."""
        refs: Dict[str, KeyRef] = {}
        for segment in segments:
            if segment.key is not None and segment.key.uri not in refs:
                refs[segment.key.uri] = segment.key

        for uri, ref in refs.items():
            if uri not in self.cache:
                self.cache.put(self.resolve(ref))

        if refs:
            logger.info(f"Resolved {len(refs)} encryption key(s)")
        return self.cache

    def resolve(self, ref: KeyRef) -> EncryptionKey:
        if ref.method not in SUPPORTED_METHODS:
            raise FatalKeyResolution(ref.uri, f"unsupported method {ref.method}")
        if ref.key_format and ref.key_format != 'identity':
            raise FatalKeyResolution(ref.uri, f"DRM key format {ref.key_format} is not handled here")
        if not ref.uri:
            raise FatalKeyResolution(ref.uri, "missing key URI")

        if self.preset_key is not None:
            raw = self.preset_key
        elif ref.uri.startswith(DRM_SCHEMES):
            raise FatalKeyResolution(ref.uri, "DRM key URI requires a license pipeline")
        elif ref.uri.startswith('data:'):
            raw = self._decode_data_uri(ref.uri)
        else:
            raw = self._fetch(ref.uri)

        if len(raw) != 16:
            raise FatalKeyResolution(ref.uri, f"expected 16 key bytes, got {len(raw)}")

        logger.debug(f"Key ready: {ref.uri}")
        return EncryptionKey(ref.uri, raw)

    def _fetch(self, uri: str) -> bytes:
        try:
            with create_client(headers=self.headers, timeout=TIMEOUT, follow_redirects=True, transport=self.transport) as client:
                response = client.get(uri)
                response.raise_for_status()
                return response.content

        except httpx.HTTPStatusError as e:
            raise FatalKeyResolution(uri, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FatalKeyResolution(uri, str(e)) from e

    @staticmethod
    def _decode_data_uri(uri: str) -> bytes:
        header, _, payload = uri.partition(',')
        try:
            if header.endswith(';base64'):
                return base64.b64decode(payload)
            payload = unquote(payload)
            if len(payload) == 32:
                return bytes.fromhex(payload)
            return payload.encode('latin-1')

        except (binascii.Error, ValueError) as e:
            raise FatalKeyResolution(uri[:40], f"bad data URI: {e}") from e


class SegmentDecryptor:
    def __init__(self, cache: KeyCache):
        self.cache = cache

    def decrypt(self, data: bytes, segment: Segment) -> bytes:
        """AES-128-CBC with PKCS#7 padding. Unencrypted segments pass through."""
        ref = segment.key
        if ref is None:
            return data

        key = self.cache.get(ref.uri)
        if key is None:
            raise FatalKeyResolution(ref.uri, "key was not resolved before download")

        if len(data) % AES.block_size:
            raise SegmentRejected("bad_ciphertext", f"segment {segment.sequence_index} is {len(data)} bytes, not a block multiple")

        cipher = AES.new(key.raw, AES.MODE_CBC, ref.iv)
        try:
            return unpad(cipher.decrypt(data), AES.block_size)
        except ValueError as e:
            raise SegmentRejected("bad_padding", f"segment {segment.sequence_index}: {e}") from e
