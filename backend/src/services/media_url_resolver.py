"""Turn media references into URLs that ffmpeg (or a headless page) can fetch.

Layers reference uploaded media through our own proxy route
(``/api/storage/media/<key>``), which needs the API in the loop for every
request. For rendering, those references are rewritten into signed storage
URLs that are fetched directly. Everything else passes through unchanged.
"""

import copy
import logging
import urllib.parse
from typing import Any

from src.config import get_settings
from src.services.storage_service import GCSStorageService, LocalStorageService, get_storage_service

logger = logging.getLogger(__name__)

# Printable ASCII minus space. "%" is included so existing escapes survive,
# which keeps sanitize_for_encoder idempotent.
_ENCODER_SAFE_CHARS = "".join(chr(c) for c in range(0x21, 0x7F))


def sanitize_for_encoder(url: str) -> str:
    """Percent-encode characters ffmpeg's argument/URL parsing can choke on.

    Non-ASCII characters (emoji included), whitespace and control characters
    are UTF-8 percent-encoded, which is what an HTTP client would send for
    them anyway, so the URL still names the same resource.
    """
    return urllib.parse.quote(url, safe=_ENCODER_SAFE_CHARS)


class MediaURLResolver:
    def __init__(
        self,
        storage: LocalStorageService | GCSStorageService | None = None,
        proxy_path: str | None = None,
        own_hosts: set[str] | None = None,
        expires_minutes: int | None = None,
    ) -> None:
        settings = get_settings()
        self._storage = storage
        self.proxy_path = proxy_path or settings.storage_proxy_path
        if own_hosts is None:
            own_hosts = {
                urllib.parse.urlsplit(settings.public_base_url).netloc,
                urllib.parse.urlsplit(settings.render_view_base_url).netloc,
            }
        self.own_hosts = own_hosts
        self.expires_minutes = expires_minutes or settings.media_url_expiry_minutes

    @property
    def storage(self) -> LocalStorageService | GCSStorageService:
        if self._storage is None:
            self._storage = get_storage_service()
        return self._storage

    def storage_key_for(self, ref: str) -> str | None:
        """Return the storage key if ref points at our media proxy."""
        parts = urllib.parse.urlsplit(ref)
        if parts.netloc and parts.netloc not in self.own_hosts:
            return None
        if not parts.path.startswith(self.proxy_path):
            return None
        key = urllib.parse.unquote(parts.path[len(self.proxy_path):])
        return key or None

    def resolve(self, ref: str) -> str:
        """Resolve an internal proxy reference to a signed, directly fetchable URL."""
        key = self.storage_key_for(ref)
        if key is None:
            return ref
        url = self.storage.generate_download_url(key, expires_minutes=self.expires_minutes)
        logger.debug(f"Resolved media proxy reference for key {key}")
        return url

    def resolve_for_encoder(self, ref: str) -> str:
        return sanitize_for_encoder(self.resolve(ref))

    def resolve_layer_sources(self, layers: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Copy of layers with every props.src resolved."""
        resolved = copy.deepcopy(layers)
        for layer in resolved:
            props = layer.get("props")
            if isinstance(props, dict) and isinstance(props.get("src"), str):
                props["src"] = self.resolve(props["src"])
        return resolved


def get_media_url_resolver() -> MediaURLResolver:
    return MediaURLResolver()
