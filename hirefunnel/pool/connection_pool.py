"""
Pooled, rate-limited access to external HTTP services.

Each named endpoint (LinkedIn scraper, GitHub API, voice-call provider,
...) gets its own lazily created :class:`aiohttp.ClientSession` whose
connector caps the number of open connections.  Every call goes through
:meth:`ConnectionPool.request`, which

1. waits for a free slot in the endpoint's sliding rate-limit window,
2. serves cacheable GETs from the :class:`ResponseCache` when possible,
3. retries server errors, HTTP 429, network failures and timeouts with
   exponential backoff (``retry_delay * 2 ** (attempt - 1)``),
4. fails at once on any other 4xx.

A correlation id is generated per call, sent as ``X-Correlation-ID`` and
returned on the :class:`PooledResponse` so log lines for the same call
can be grouped.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Deque, Dict, Iterable, Mapping, Optional, Union

import aiohttp

from ..errors import ExternalServiceError, NotFoundError
from .cache import ResponseCache, fingerprint

logger = logging.getLogger(__name__)


@dataclass
class EndpointConfig:
    name: str
    base_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    max_connections: int = 10
    timeout: float = 30.0
    max_idle_time: float = 60.0
    # 0 disables rate limiting for the endpoint.
    rate_limit_requests: int = 0
    rate_limit_window: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0
    health_path: str = "/"


@dataclass
class CallSpec:
    method: str = "GET"
    path: str = ""
    params: Optional[Dict[str, Any]] = None
    json: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None
    cacheable: bool = False


@dataclass
class CacheOptions:
    enabled: bool = True
    ttl: Optional[float] = None
    key: Optional[str] = None


@dataclass
class PooledResponse:
    status: int
    data: Any
    headers: Dict[str, str]
    correlation_id: str
    elapsed: float
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class EndpointStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    last_request_time: Optional[float] = None


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status == 429


def build_url(base_url: str, path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    if not path:
        return base_url
    return base_url.rstrip("/") + "/" + path.lstrip("/")


class ConnectionPool:
    """Owns one HTTP session per endpoint plus the shared response cache."""

    def __init__(
        self,
        endpoints: Iterable[EndpointConfig] = (),
        cache: Optional[ResponseCache] = None,
    ) -> None:
        self.cache = cache or ResponseCache()
        self._configs: Dict[str, EndpointConfig] = {}
        self._sessions: Dict[str, aiohttp.ClientSession] = {}
        self._stats: Dict[str, EndpointStats] = {}
        self._windows: Dict[str, Deque[float]] = defaultdict(deque)
        for config in endpoints:
            self.register_endpoint(config)

    def register_endpoint(self, config: EndpointConfig) -> None:
        self._configs[config.name] = config
        self._stats.setdefault(config.name, EndpointStats())
        logger.info(
            "Registered endpoint %s (%s, max_connections=%d, rate_limit=%d/%ss)",
            config.name, config.base_url, config.max_connections,
            config.rate_limit_requests, config.rate_limit_window,
        )

    @property
    def endpoints(self) -> Dict[str, EndpointConfig]:
        return dict(self._configs)

    def has_endpoint(self, name: str) -> bool:
        return name in self._configs

    def _config(self, name: str) -> EndpointConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise NotFoundError(f"Unknown endpoint: {name}") from None

    def _session(self, config: EndpointConfig) -> aiohttp.ClientSession:
        session = self._sessions.get(config.name)
        if session is None or session.closed:
            connector = aiohttp.TCPConnector(
                limit=config.max_connections,
                keepalive_timeout=config.max_idle_time,
            )
            session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=config.timeout),
                headers=config.headers,
            )
            self._sessions[config.name] = session
        return session

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _acquire_slot(self, config: EndpointConfig) -> None:
        """Block until the endpoint's sliding window has room for one call."""
        if config.rate_limit_requests <= 0:
            return
        window = self._windows[config.name]
        while True:
            now = time.monotonic()
            while window and now - window[0] >= config.rate_limit_window:
                window.popleft()
            if len(window) < config.rate_limit_requests:
                window.append(now)
                return
            wait = config.rate_limit_window - (now - window[0])
            logger.debug("Rate limit reached for %s, waiting %.3fs", config.name, wait)
            await asyncio.sleep(max(wait, 0.001))

    async def _send(
        self, config: EndpointConfig, call: CallSpec, correlation_id: str
    ) -> PooledResponse:
        headers = dict(call.headers or {})
        headers["X-Correlation-ID"] = correlation_id
        started = time.monotonic()
        async with self._session(config).request(
            call.method.upper(),
            build_url(config.base_url, call.path),
            params=call.params,
            json=call.json,
            headers=headers,
        ) as resp:
            if resp.content_type == "application/json":
                try:
                    data: Any = await resp.json()
                except ValueError as exc:
                    if not 200 <= resp.status < 300:
                        # Error statuses are classified by status; keep the raw body.
                        data = await resp.text()
                        return self._response(resp, data, correlation_id, started)
                    raise ExternalServiceError(
                        f"{config.name} {call.method.upper()} {call.path} returned malformed JSON "
                        f"(HTTP {resp.status}): {exc}",
                        endpoint=config.name,
                        status=resp.status,
                        retryable=False,
                    ) from exc
            else:
                data = await resp.text()
            return self._response(resp, data, correlation_id, started)

    @staticmethod
    def _response(
        resp: aiohttp.ClientResponse, data: Any, correlation_id: str, started: float
    ) -> PooledResponse:
        return PooledResponse(
            status=resp.status,
            data=data,
            headers=dict(resp.headers),
            correlation_id=correlation_id,
            elapsed=time.monotonic() - started,
        )

    async def request(
        self,
        endpoint: str,
        call: CallSpec,
        cache: Optional[CacheOptions] = None,
    ) -> PooledResponse:
        """Issue ``call`` against ``endpoint`` with rate limiting, caching and retry."""
        config = self._config(endpoint)
        correlation_id = uuid.uuid4().hex
        method = call.method.upper()

        use_cache = call.cacheable and (cache is None or cache.enabled)
        cache_key = None
        if use_cache:
            cache_key = (cache.key if cache and cache.key else None) or fingerprint(
                endpoint, method, call.path, call.params, call.json
            )
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("[%s] cache hit for %s %s %s", correlation_id, endpoint, method, call.path)
                return replace(
                    cached,
                    data=copy.deepcopy(cached.data),
                    correlation_id=correlation_id,
                    elapsed=0.0,
                    from_cache=True,
                )

        attempts = config.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            await self._acquire_slot(config)
            started = time.monotonic()
            logger.debug(
                "[%s] %s %s %s (attempt %d/%d)",
                correlation_id, endpoint, method, call.path, attempt, attempts,
            )
            try:
                response = await self._send(config, call, correlation_id)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self._record(endpoint, False, time.monotonic() - started)
                error = ExternalServiceError(
                    f"{endpoint} {method} {call.path} failed: {exc.__class__.__name__}: {exc}",
                    endpoint=endpoint,
                    retryable=True,
                )
            except ExternalServiceError as exc:
                self._record(endpoint, False, time.monotonic() - started)
                logger.warning("[%s] %s", correlation_id, exc.message)
                raise
            else:
                if response.ok:
                    self._record(endpoint, True, response.elapsed)
                    logger.debug(
                        "[%s] %s %s %s -> %d in %.3fs",
                        correlation_id, endpoint, method, call.path, response.status, response.elapsed,
                    )
                    if cache_key is not None:
                        self.cache.set(
                            cache_key,
                            replace(response, data=copy.deepcopy(response.data)),
                            cache.ttl if cache else None,
                        )
                    return response
                self._record(endpoint, False, response.elapsed)
                error = ExternalServiceError(
                    f"{endpoint} {method} {call.path} returned HTTP {response.status}",
                    endpoint=endpoint,
                    status=response.status,
                    retryable=_is_retryable_status(response.status),
                )
                if not error.retryable:
                    logger.warning("[%s] %s", correlation_id, error.message)
                    raise error

            if attempt >= attempts:
                logger.error("[%s] %s; giving up after %d attempts", correlation_id, error.message, attempts)
                raise error
            delay = config.retry_delay * 2 ** (attempt - 1)
            logger.warning(
                "[%s] %s; retrying in %.2fs (%d/%d)",
                correlation_id, error.message, delay, attempt, config.max_retries,
            )
            await asyncio.sleep(delay)

    async def get(
        self,
        endpoint: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        cacheable: bool = True,
        ttl: Optional[float] = None,
    ) -> PooledResponse:
        return await self.request(
            endpoint,
            CallSpec(method="GET", path=path, params=params, cacheable=cacheable),
            CacheOptions(ttl=ttl),
        )

    async def post(self, endpoint: str, path: str, json: Optional[Any] = None) -> PooledResponse:
        return await self.request(endpoint, CallSpec(method="POST", path=path, json=json))

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    def _record(self, endpoint: str, success: bool, elapsed: float) -> None:
        stats = self._stats.setdefault(endpoint, EndpointStats())
        stats.total_requests += 1
        if success:
            stats.successful_requests += 1
        else:
            stats.failed_requests += 1
        stats.average_response_time = (
            stats.average_response_time * (stats.total_requests - 1) + elapsed
        ) / stats.total_requests
        stats.last_request_time = time.time()

    def get_stats(
        self, name: Optional[str] = None
    ) -> Union[EndpointStats, Dict[str, EndpointStats]]:
        if name is not None:
            self._config(name)
            return replace(self._stats[name])
        return {key: replace(value) for key, value in self._stats.items()}

    def reset_stats(self, name: Optional[str] = None) -> None:
        names = [name] if name is not None else list(self._stats)
        for key in names:
            self._config(key)
            self._stats[key] = EndpointStats()

    def stats_dict(self) -> Dict[str, Mapping[str, Any]]:
        return {key: asdict(value) for key, value in self._stats.items()}

    async def health_check(self) -> Dict[str, Any]:
        """HEAD every endpoint once, without retry or caching."""
        results: Dict[str, Dict[str, Any]] = {}
        for name, config in self._configs.items():
            try:
                async with self._session(config).head(
                    build_url(config.base_url, config.health_path)
                ) as resp:
                    results[name] = {"healthy": resp.status < 400, "status": resp.status, "error": None}
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                results[name] = {"healthy": False, "status": None, "error": str(exc) or exc.__class__.__name__}
        return {
            "healthy": all(r["healthy"] for r in results.values()),
            "endpoints": results,
        }

    async def close(self) -> None:
        for name, session in list(self._sessions.items()):
            if not session.closed:
                await session.close()
            logger.debug("Closed session for %s", name)
        self._sessions.clear()

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
