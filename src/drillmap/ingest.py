"""GeoJSON layer loading: fetch, reproject in chunks, cache with expiry."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import unquote, urlparse

import requests

from .config import AppConfig, IngestConfig, SourceConfig
from .models import (
    CANONICAL_CRS,
    DEFAULT_LEVEL_SCHEMAS,
    AdministrativeLevel,
    CacheEntry,
    FeatureCollection,
    LayerSet,
    LevelSchema,
    normalize_code,
)
from .reproject import reproject


_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}

_LOGGER = logging.getLogger("drillmap.ingest")

Fetcher = Callable[[str], Any]
LayerListener = Callable[[AdministrativeLevel, "FeatureCollection | None"], None]


class FeatureCache:
    """URL-keyed cache of reprojected collections with a max age.

    Stale entries are dropped lazily: every `put` sweeps the whole map.
    Entries are replaced whole, never updated in place.
    """

    def __init__(self, max_age_s: float) -> None:
        if max_age_s <= 0:
            raise ValueError("max_age_s must be > 0")
        self.max_age_s = float(max_age_s)
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def get(self, url: str, now: float) -> FeatureCollection | None:
        entry = self._entries.get(url)
        if entry is None or now - entry.timestamp >= self.max_age_s:
            return None
        return entry.data

    def put(self, url: str, data: FeatureCollection, now: float) -> None:
        self._entries[url] = CacheEntry(data=data, timestamp=now)
        evicted = self.evict_stale(now)
        if evicted:
            _LOGGER.debug("Evicted %d stale cache entries", evicted)

    def evict_stale(self, now: float) -> int:
        stale = [
            url for url, entry in self._entries.items() if now - entry.timestamp > self.max_age_s
        ]
        for url in stale:
            del self._entries[url]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class GeoJSONFetcher:
    """Fetch raw GeoJSON from HTTP(S) endpoints or local files.

    Any failure raises; the pipeline decides what a failure means. Layers are
    fetched from worker threads, so each thread gets its own session.
    """

    def __init__(self, cfg: SourceConfig, *, root_dir: Path | None = None) -> None:
        self.cfg = cfg
        self.root_dir = root_dir
        self._headers = {"User-Agent": cfg.user_agent, "Accept": "application/geo+json, application/json"}
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()
        self._max_retries = max(int(cfg.max_retries), 0)
        self._retry_backoff_s = max(float(cfg.retry_backoff_s), 0.01)

    def __call__(self, url: str) -> Any:
        scheme = urlparse(url).scheme.casefold()
        if scheme in {"http", "https"}:
            return self._request_get(url).json()
        return json.loads(self._local_path(url).read_text(encoding="utf-8"))

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
            self._local = threading.local()
        for session in sessions:
            session.close()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self._headers)
            with self._sessions_lock:
                self._local.session = session
                self._sessions.append(session)
        return session

    def _local_path(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme.casefold() == "file":
            return Path(unquote(parsed.path))
        path = Path(url)
        if path.is_absolute() or self.root_dir is None:
            return path
        return self.root_dir / path

    def _request_get(self, url: str) -> requests.Response:
        session = self._session()
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            response = session.get(url, timeout=self.cfg.request_timeout_s)
            if response.status_code not in _RETRYABLE_HTTP_STATUS:
                response.raise_for_status()
                return response
            if attempt >= self._max_retries:
                response.raise_for_status()
            delay_s = self._compute_retry_delay_s(response=response, attempt=attempt)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                response.url,
                delay_s,
                attempt + 1,
                self._max_retries,
            )
            response.close()
            time.sleep(delay_s)
        raise RuntimeError("Unreachable retry loop in GeoJSON fetcher")

    def _compute_retry_delay_s(self, *, response: requests.Response, attempt: int) -> float:
        retry_after_s = _parse_retry_after_seconds(response.headers.get("Retry-After"))
        exponential_s = self._retry_backoff_s * (2**attempt)
        return min(max(exponential_s, retry_after_s), 60.0)


class IngestionPipeline:
    """Loads the three administrative layers into canonical lon/lat.

    Per-URL failures are logged and turn into `None`; nothing is raised to
    callers of `load` or `load_all`.
    """

    def __init__(
        self,
        source: SourceConfig,
        ingest: IngestConfig,
        *,
        fetcher: Fetcher | None = None,
        clock: Callable[[], float] = time.time,
        schemas: Mapping[AdministrativeLevel, LevelSchema] | None = None,
        on_layer: LayerListener | None = None,
    ) -> None:
        self.source = source
        self.ingest = ingest
        self.cache = FeatureCache(ingest.cache_max_age_s)
        self.progress = 0.0
        self.loading = False
        self.layers = LayerSet()
        self._fetcher = fetcher if fetcher is not None else GeoJSONFetcher(source)
        self._clock = clock
        self._code_keys = _code_keys(schemas or DEFAULT_LEVEL_SCHEMAS)
        self._on_layer = on_layer
        self._inflight: asyncio.Task[LayerSet] | None = None

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        fetcher: Fetcher | None = None,
        on_layer: LayerListener | None = None,
    ) -> IngestionPipeline:
        if fetcher is None:
            root_dir = cfg.source_path.parent if cfg.source_path is not None else None
            fetcher = GeoJSONFetcher(cfg.source, root_dir=root_dir)
        return cls(
            cfg.source,
            cfg.ingest,
            fetcher=fetcher,
            schemas=cfg.drilldown.schemas,
            on_layer=on_layer,
        )

    async def load(self, url: str) -> FeatureCollection | None:
        now = self._clock()
        cached = self.cache.get(url, now)
        if cached is not None:
            _LOGGER.debug("Cache hit for %s", url)
            return cached

        try:
            raw = await asyncio.to_thread(self._fetcher, url)
            if not raw:
                _LOGGER.warning("Empty payload from %s", url)
                return None
            collection = FeatureCollection.from_geojson(raw)
            if collection.crs is None and self.ingest.default_crs is not None:
                collection = replace(collection, crs=self.ingest.default_crs)
            if len(collection) > self.ingest.large_dataset_threshold:
                converted = await self._reproject_in_chunks(collection)
            else:
                converted = reproject(collection)
            converted = normalize_codes(converted, self._code_keys)
        except Exception as exc:
            _LOGGER.error("Error loading %s: %s", url, exc)
            return None

        self.cache.put(url, converted, now)
        _LOGGER.info("Loaded %d features from %s", len(converted), url)
        return converted

    async def load_all(self) -> LayerSet:
        """Load province, then district and commune together.

        A second call while one is running waits on the running load instead
        of starting another fetch set.
        """
        if self._inflight is not None and not self._inflight.done():
            _LOGGER.info("Layer load already in progress; joining it")
            return await asyncio.shield(self._inflight)
        self.loading = True
        self.progress = 0.0
        self._inflight = asyncio.create_task(self._load_all())
        return await self._inflight

    def close(self) -> None:
        self.cache.clear()
        close = getattr(self._fetcher, "close", None)
        if callable(close):
            close()

    async def _load_all(self) -> LayerSet:
        try:
            province = await self.load(self.source.url_for(AdministrativeLevel.PROVINCE))
            self._publish(AdministrativeLevel.PROVINCE, province)

            # Yield so the province layer can render before the heavier layers.
            await asyncio.sleep(self.ingest.settle_delay_s)

            results = await asyncio.gather(
                self.load(self.source.url_for(AdministrativeLevel.DISTRICT)),
                self.load(self.source.url_for(AdministrativeLevel.COMMUNE)),
                return_exceptions=True,
            )
            for level, result in zip((AdministrativeLevel.DISTRICT, AdministrativeLevel.COMMUNE), results):
                if isinstance(result, BaseException):
                    _LOGGER.error("Unhandled error loading %s layer: %s", level.label, result)
                    result = None
                self._publish(level, result)
        except Exception as exc:
            _LOGGER.error("Unhandled error loading GeoJSON layers: %s", exc)
        finally:
            self.loading = False
            self.progress = 100.0
        return self.layers

    def _publish(self, level: AdministrativeLevel, collection: FeatureCollection | None) -> None:
        self.layers = replace(self.layers, **{level.label: collection})
        if self._on_layer is not None:
            self._on_layer(level, collection)

    async def _reproject_in_chunks(self, collection: FeatureCollection) -> FeatureCollection:
        total = len(collection)
        size = self.ingest.chunk_size
        converted = []
        for start in range(0, total, size):
            chunk = collection.with_features(collection.features[start : start + size])
            converted.extend(reproject(chunk).features)
            self.progress = len(converted) / total * 100.0
            await asyncio.sleep(0)
        return FeatureCollection(features=tuple(converted), crs=CANONICAL_CRS)


def normalize_codes(collection: FeatureCollection, keys: Iterable[str]) -> FeatureCollection:
    """Rewrite code properties to their canonical string form."""
    key_set = tuple(keys)
    features = []
    for feature in collection.features:
        updates: dict[str, Any] = {}
        for key in key_set:
            if key not in feature.properties:
                continue
            value = feature.properties[key]
            normalized = normalize_code(value)
            if normalized != value:
                updates[key] = normalized
        if updates:
            feature = feature.with_properties({**feature.properties, **updates})
        features.append(feature)
    return collection.with_features(features)


def format_layer_lines(layers: LayerSet) -> Sequence[str]:
    lines: list[str] = []
    missing: list[str] = []
    for level in AdministrativeLevel:
        collection = layers.get(level)
        if collection is None:
            missing.append(level.label)
            lines.append(f"[WARN] {level.label} layer not loaded")
            continue
        lines.append(f"[INFO] {level.label} layer: {len(collection)} features")
    if not missing:
        lines.append("[OK] All layers loaded.")
    return lines


def _code_keys(schemas: Mapping[AdministrativeLevel, LevelSchema]) -> tuple[str, ...]:
    keys: list[str] = []
    for schema in schemas.values():
        for key in (schema.code_key, schema.parent_code_key):
            if key is not None and key not in keys:
                keys.append(key)
    return tuple(keys)


def _parse_retry_after_seconds(raw: str | None) -> float:
    if raw is None:
        return 0.0
    value = raw.strip()
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    return max(parsed, 0.0)
