# =============================================================================
# ontime_core/offline/cache_gateway.py
# Request-level cache policy for the application's own origin
# =============================================================================
"""
CacheGateway - a requests transport adapter that applies a cache strategy
to every GET sent to the application's origin.

Strategies (decided once, from the configured path lists):
- static (shell page, icons, manifest): cache-first
- api reads (``/api/...``): network-first, dynamic cache fallback
- anything else on the origin: network-first, then the cached shell page

Non-GET and cross-origin requests go straight to the network. Only 2xx
responses are ever written to a bucket. Buckets are versioned; ``activate``
deletes every bucket that does not belong to the current version.

Usage:
    gateway = CacheGateway(store, origin="https://ontime.example.com", version=3)
    session = requests.Session()
    gateway.mount(session)
    gateway.install()     # precache static paths
    gateway.activate()    # purge old-version buckets
"""

from __future__ import annotations
import json
import re
from enum import Enum
from http.client import responses as http_reasons
from typing import Dict, Iterable, List, Optional, Pattern, Tuple
from urllib.parse import urlsplit

import requests
from requests.adapters import BaseAdapter, HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from ontime_core.config import DEFAULT_API_PREFIXES, DEFAULT_STATIC_PATHS
from ontime_core.logging import get_logger, LogContext
from ontime_core.offline.local_store import LocalStore
from ontime_core.offline.models import StoredResponse
from ontime_core.services import ServiceResult

logger = get_logger(__name__)

CACHE_PREFIX = "ontime"
OFFLINE_HEADER = "X-OnTime-Offline"
CACHE_HEADER = "X-OnTime-Cache"
SHELL_PATH = "/"

# Headers that describe the wire encoding, not the stored (decoded) body
_HOP_HEADERS = {"content-encoding", "transfer-encoding", "content-length", "connection"}

NETWORK_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class RequestClass(Enum):
    STATIC = "static"
    API = "api"
    OTHER = "other"
    PASSTHROUGH = "passthrough"


def is_offline_response(response: requests.Response) -> bool:
    """True for the gateway's own 503 placeholder (not a real server error)."""
    return response.headers.get(OFFLINE_HEADER) == "1"


def _origin_of(url: str) -> Tuple[str, str, int]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    port = parts.port or (443 if scheme == "https" else 80)
    return scheme, (parts.hostname or "").lower(), port


class CacheGateway(HTTPAdapter):
    """Cache-aware transport adapter for the application's origin."""

    def __init__(
        self,
        store: LocalStore,
        origin: str,
        version: int = 2,
        static_paths: Iterable[str] = DEFAULT_STATIC_PATHS,
        api_prefixes: Iterable[str] = DEFAULT_API_PREFIXES,
        network: Optional[BaseAdapter] = None,
        timeout: Optional[float] = 15.0,
        **adapter_kwargs,
    ):
        """
        Args:
            store: LocalStore owning the cache buckets
            origin: Scheme://host[:port] of the application
            version: Cache version tag
            static_paths: Exact paths served cache-first
            api_prefixes: Path prefixes treated as data-bearing API reads
            network: Adapter used for real network calls (default: urllib3 via HTTPAdapter)
            timeout: Default timeout for gateway-initiated fetches
        """
        super().__init__(**adapter_kwargs)
        self.store = store
        self.origin = origin.rstrip("/")
        self.version_tag = int(version)
        self.timeout = timeout
        self._origin_key = _origin_of(self.origin)
        self._network = network
        self.static_paths: Tuple[str, ...] = tuple(static_paths)
        self._static_set = frozenset(self.static_paths)
        self._api_patterns: List[Pattern[str]] = [
            re.compile("^" + re.escape(prefix)) for prefix in api_prefixes
        ]

    # =========================================================================
    # NAMING
    # =========================================================================

    @property
    def version(self) -> str:
        """Active cache name, e.g. ``ontime-v2``."""
        return f"{CACHE_PREFIX}-v{self.version_tag}"

    @property
    def static_bucket(self) -> str:
        return f"{CACHE_PREFIX}-static-v{self.version_tag}"

    @property
    def dynamic_bucket(self) -> str:
        return f"{CACHE_PREFIX}-dynamic-v{self.version_tag}"

    @property
    def current_buckets(self) -> Tuple[str, str]:
        return self.static_bucket, self.dynamic_bucket

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================

    def classify(self, method: str, url: str) -> RequestClass:
        """Decide which strategy applies to a request."""
        if (method or "").upper() != "GET":
            return RequestClass.PASSTHROUGH
        if _origin_of(url) != self._origin_key:
            return RequestClass.PASSTHROUGH

        path = urlsplit(url).path or "/"
        if path in self._static_set:
            return RequestClass.STATIC
        if any(pattern.match(path) for pattern in self._api_patterns):
            return RequestClass.API
        return RequestClass.OTHER

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def send(self, request, **kwargs) -> requests.Response:
        request_class = self.classify(request.method, request.url)

        if request_class is RequestClass.PASSTHROUGH:
            return self._fetch(request, **kwargs)
        if request_class is RequestClass.STATIC:
            return self._cache_first(request, **kwargs)
        if request_class is RequestClass.API:
            return self._network_first(request, fallback_to_shell=False, **kwargs)
        return self._network_first(request, fallback_to_shell=True, **kwargs)

    def _fetch(self, request, **kwargs) -> requests.Response:
        if self._network is not None:
            return self._network.send(request, **kwargs)
        return super().send(request, **kwargs)

    def _cache_first(self, request, **kwargs) -> requests.Response:
        cached = self.store.match_response(request.url, self.current_buckets)
        if cached is not None:
            logger.debug(f"Cache hit (static): {request.url}")
            return self._from_cache(cached, request)

        try:
            response = self._fetch(request, **kwargs)
        except NETWORK_ERRORS as e:
            logger.info(f"Offline and not cached: {request.url} ({e})")
            return self.offline_response(request)

        self._store_if_ok(self.static_bucket, request.url, response)
        return response

    def _network_first(self, request, fallback_to_shell: bool, **kwargs) -> requests.Response:
        try:
            response = self._fetch(request, **kwargs)
        except NETWORK_ERRORS as e:
            logger.info(f"Network failed for {request.url}, trying cache ({e})")
            return self._fallback(request, fallback_to_shell)

        self._store_if_ok(self.dynamic_bucket, request.url, response)
        return response

    def _fallback(self, request, fallback_to_shell: bool) -> requests.Response:
        buckets = (self.dynamic_bucket, self.static_bucket) if fallback_to_shell \
            else (self.dynamic_bucket,)
        cached = self.store.match_response(request.url, buckets)
        if cached is not None:
            return self._from_cache(cached, request)

        if fallback_to_shell:
            shell = self.store.match_response(self.origin + SHELL_PATH, self.current_buckets)
            if shell is not None:
                logger.debug(f"Serving cached shell page for {request.url}")
                return self._from_cache(shell, request)

        return self.offline_response(request)

    # =========================================================================
    # RESPONSE CONVERSION
    # =========================================================================

    def _store_if_ok(self, bucket: str, url: str, response: requests.Response) -> None:
        if not 200 <= response.status_code < 300:
            return
        headers = {
            key: value for key, value in response.headers.items()
            if key.lower() not in _HOP_HEADERS
        }
        result = self.store.put_response(StoredResponse(
            bucket=bucket,
            url=url,
            status_code=response.status_code,
            headers=headers,
            body=response.content or b"",
        ))
        if not result:
            logger.warning(f"Could not cache {url}: {result.error}")

    def _build_response(
        self,
        request,
        status_code: int,
        headers: Dict[str, str],
        body: bytes,
    ) -> requests.Response:
        response = requests.Response()
        response.status_code = status_code
        response.reason = http_reasons.get(status_code, "")
        response.headers = CaseInsensitiveDict(headers)
        response._content = body
        response.encoding = get_encoding_from_headers(response.headers)
        response.url = request.url
        response.request = request
        return response

    def _from_cache(self, stored: StoredResponse, request) -> requests.Response:
        headers = dict(stored.headers)
        headers[CACHE_HEADER] = "hit"
        return self._build_response(request, stored.status_code, headers, stored.body)

    def offline_response(self, request) -> requests.Response:
        """Deterministic 503 placeholder, distinguishable from a server error."""
        body = json.dumps({
            "error": "offline",
            "message": "No network connection and no cached copy available",
            "url": request.url,
        }).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            OFFLINE_HEADER: "1",
        }
        return self._build_response(request, 503, headers, body)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def mount(self, session: requests.Session) -> requests.Session:
        """Route the origin's requests through this gateway."""
        session.mount(self.origin + "/", self)
        return session

    def install(self) -> ServiceResult:
        """
        Precache every static path into the current static bucket.

        A path that fails does not stop the others; the result lists both.
        """
        cached: List[str] = []
        failed: List[str] = []

        with LogContext(logger, f"Installing precache {self.static_bucket}"):
            for path in self.static_paths:
                url = self.origin + path
                prepared = requests.Request("GET", url).prepare()
                try:
                    response = self._fetch(prepared, timeout=self.timeout)
                except NETWORK_ERRORS as e:
                    logger.warning(f"Precache failed for {path}: {e}")
                    failed.append(path)
                    continue

                if 200 <= response.status_code < 300:
                    self._store_if_ok(self.static_bucket, prepared.url, response)
                    cached.append(path)
                else:
                    logger.warning(f"Precache got {response.status_code} for {path}")
                    failed.append(path)

        data = {"cached": cached, "failed": failed, "bucket": self.static_bucket}
        if cached or not failed:
            return ServiceResult.ok(data)
        return ServiceResult.fail(
            "No static resource could be precached",
            error_code="CACHE_001",
            metadata=data,
        )

    def activate(self) -> ServiceResult:
        """Delete every bucket not belonging to the current version."""
        try:
            with LogContext(logger, f"Activating cache {self.version}"):
                deleted = self.store.delete_buckets_except(self.current_buckets)
                self.store.set_setting("cache_version", self.version_tag)
        except Exception as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.ok(deleted)

    def close(self) -> None:
        if self._network is not None:
            self._network.close()
        super().close()


# Singleton accessor
_cache_gateway: Optional[CacheGateway] = None


def get_cache_gateway() -> CacheGateway:
    """Get the global CacheGateway built from settings and activated."""
    global _cache_gateway
    if _cache_gateway is None:
        from ontime_core.config import get_settings
        from ontime_core.offline.local_store import get_local_store

        settings = get_settings()
        _cache_gateway = CacheGateway(
            store=get_local_store(),
            origin=settings.origin,
            version=settings.cache_version,
            static_paths=settings.static_paths,
            api_prefixes=settings.api_prefixes,
            timeout=settings.request_timeout,
        )
        _cache_gateway.activate()
    return _cache_gateway
