"""
Lazy loading of per-field arrays with bounded caches.

Loaded arrays live in two LRU caches (obs and var) keyed by the field's
original key, independent of any Field object. Concurrent requests for the
same field share a single in-flight task.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from ..config import OBS_CACHE_SIZE, VAR_CACHE_SIZE
from ..errors import ConfigurationError, FieldLoadError
from ..fields import CategoryPayload, Field, FieldSource
from ..helpers.interfaces import FieldLoader, LoadedArrays, NotificationCenter
from ..tools.lru_cache import LRUCache

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def install_arrays(field: Field, arrays: LoadedArrays) -> None:
    """Attach loaded arrays to a field object."""
    if isinstance(field.payload, CategoryPayload):
        field.payload.codes = arrays.codes
    else:
        field.payload.values = arrays.values
    field.outlier_quantiles = arrays.outlier_quantiles


def _check_length(name: str, array: Optional[np.ndarray], point_count: int, key: str) -> None:
    if array is None:
        return
    if len(array) != point_count:
        raise FieldLoadError(
            f"Field '{key}' {name} length {len(array)} does not match point count {point_count}"
        )


class FieldLoaderCache:
    """Loads and caches field arrays for both sources.

    Args:
        obs_loader: ``async (field) -> LoadedArrays`` for obs columns
        var_loader: ``async (field) -> LoadedArrays`` for genes
        obs_cache_size: Capacity of the obs cache
        var_cache_size: Capacity of the var cache
        max_age: Seconds before a cache entry expires (0 = never)
        notifications: Progress sink; optional
        on_evict: Called as ``on_evict(source, original_key)`` after eviction
    """

    def __init__(
        self,
        obs_loader: Optional[FieldLoader] = None,
        var_loader: Optional[FieldLoader] = None,
        obs_cache_size: int = OBS_CACHE_SIZE,
        var_cache_size: int = VAR_CACHE_SIZE,
        max_age: float = 0.0,
        notifications: Optional[NotificationCenter] = None,
        on_evict: Optional[Callable[[FieldSource, str], None]] = None,
    ):
        self.loaders: Dict[FieldSource, Optional[FieldLoader]] = {
            FieldSource.OBS: obs_loader,
            FieldSource.VAR: var_loader,
        }
        self.notifications = notifications
        self.on_evict = on_evict
        self.caches: Dict[FieldSource, LRUCache] = {
            FieldSource.OBS: LRUCache(obs_cache_size, max_age, self._evicted(FieldSource.OBS)),
            FieldSource.VAR: LRUCache(var_cache_size, max_age, self._evicted(FieldSource.VAR)),
        }
        self._in_flight: Dict[CacheKey, "asyncio.Future[LoadedArrays]"] = {}
        self.load_calls = 0

    def _evicted(self, source: FieldSource):
        def handler(key, _value):
            logger.debug("Evicted %s field %r from cache", source.value, key)
            if self.on_evict is not None:
                self.on_evict(source, key)
        return handler

    def cached(self, source: FieldSource, original_key: str) -> Optional[LoadedArrays]:
        return self.caches[FieldSource(source)].get(original_key)

    def is_loading(self, source: FieldSource, original_key: str) -> bool:
        return (FieldSource(source).value, original_key) in self._in_flight

    def forget(self, source: FieldSource, original_key: str) -> None:
        self.caches[FieldSource(source)].delete(original_key)

    def clear(self) -> None:
        for cache in self.caches.values():
            cache.clear()
        self._in_flight.clear()

    def get_stats(self) -> Dict[str, Dict]:
        return {source.value: cache.get_stats() for source, cache in self.caches.items()}

    async def load(self, field: Field, point_count: int, silent: bool = False) -> LoadedArrays:
        """Return the arrays for ``field``, loading them at most once.

        Raises:
            ConfigurationError: no loader is registered for the field's source
            FieldLoadError: the loader failed or returned mis-sized arrays
        """
        source = field.source
        original_key = field.registry_key

        arrays = self.caches[source].get(original_key)
        if arrays is not None:
            return arrays

        cache_key = (source.value, original_key)
        pending = self._in_flight.get(cache_key)
        if pending is None:
            loader = self.loaders.get(source)
            if loader is None:
                raise ConfigurationError(f"No {source.value} field loader configured")
            pending = asyncio.ensure_future(self._run_loader(loader, field, point_count, silent))
            self._in_flight[cache_key] = pending
        else:
            logger.debug("Joining in-flight load of %s field %r", source.value, original_key)
        return await pending

    async def _run_loader(self, loader: FieldLoader, field: Field, point_count: int, silent: bool) -> LoadedArrays:
        source = field.source
        original_key = field.registry_key
        notifications = None if silent else self.notifications
        notif_id = notifications.loading(f"Loading {field.key}...") if notifications else None

        self.load_calls += 1
        try:
            try:
                arrays = await loader(field)
            except FieldLoadError:
                raise
            except Exception as exc:
                raise FieldLoadError(f"Failed to load field '{original_key}': {exc}") from exc

            if arrays is None:
                raise FieldLoadError(f"Loader returned nothing for field '{original_key}'")
            if field.is_categorical and arrays.codes is None:
                raise FieldLoadError(f"Loader returned no codes for categorical field '{original_key}'")
            if field.is_continuous and arrays.values is None:
                raise FieldLoadError(f"Loader returned no values for continuous field '{original_key}'")

            _check_length("values", arrays.values, point_count, original_key)
            _check_length("codes", arrays.codes, point_count, original_key)
            _check_length("outlier quantiles", arrays.outlier_quantiles, point_count, original_key)

            self.caches[source].set(original_key, arrays)
            if notifications:
                notifications.complete(notif_id, f"Loaded {field.key}")
            logger.debug("Loaded %s field %r", source.value, original_key)
            return arrays
        except Exception as exc:
            logger.error("Loading %s field %r failed: %s", source.value, original_key, exc)
            if notifications:
                notifications.fail(notif_id, str(exc) or f"Failed to load {field.key}")
            raise
        finally:
            self._in_flight.pop((source.value, original_key), None)
