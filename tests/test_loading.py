"""Tests for lazy field loading and the bounded caches."""

import asyncio

import numpy as np
import pytest

from cellview_state import DataState, EngineConfig, Field, FieldSource, LoadedArrays
from cellview_state.errors import ConfigurationError, FieldLoadError
from cellview_state.state.loading import FieldLoaderCache

from conftest import N_POINTS, DictLoader, make_obs_fields, make_var_fields


class TestFieldLoaderCache:
    def test_concurrent_loads_share_one_task(self, obs_loader):
        cache = FieldLoaderCache(obs_loader=obs_loader)
        first = Field.categorical("cluster", ["A", "B", "C"])
        second = Field.categorical("cluster", ["A", "B", "C"])

        async def load_both():
            return await asyncio.gather(cache.load(first, N_POINTS), cache.load(second, N_POINTS))

        a, b = asyncio.run(load_both())
        assert a is b
        assert obs_loader.calls == ["cluster"]
        assert not cache.is_loading(FieldSource.OBS, "cluster")

    def test_length_mismatch_raises_and_clears_marker(self, notifications):
        loader = DictLoader({"short": LoadedArrays(values=np.zeros(3, dtype=np.float32))})
        cache = FieldLoaderCache(obs_loader=loader, notifications=notifications)
        field = Field.continuous("short")

        with pytest.raises(FieldLoadError):
            asyncio.run(cache.load(field, N_POINTS))
        assert not cache.is_loading(FieldSource.OBS, "short")
        assert cache.cached(FieldSource.OBS, "short") is None
        assert notifications.history[-1][0] == "fail"

    def test_loader_exception_is_wrapped(self):
        loader = DictLoader({})
        cache = FieldLoaderCache(obs_loader=loader)
        with pytest.raises(FieldLoadError):
            asyncio.run(cache.load(Field.continuous("missing"), N_POINTS))

    def test_missing_loader(self):
        cache = FieldLoaderCache()
        with pytest.raises(ConfigurationError):
            asyncio.run(cache.load(Field.continuous("x"), N_POINTS))

    def test_wrong_kind_is_rejected(self):
        loader = DictLoader({"x": LoadedArrays(values=np.zeros(N_POINTS, dtype=np.float32))})
        cache = FieldLoaderCache(obs_loader=loader)
        with pytest.raises(FieldLoadError):
            asyncio.run(cache.load(Field.categorical("x", ["a"]), N_POINTS))


class TestDataStateLoading:
    def test_eviction_releases_and_reload_restores(self, viewer, dimension_manager, obs_loader, var_loader):
        state = DataState(
            viewer=viewer,
            dimension_manager=dimension_manager,
            obs_loader=obs_loader,
            var_loader=var_loader,
            config=EngineConfig(var_cache_size=2),
        )
        state.load_dataset(make_obs_fields(), make_var_fields(), point_count=N_POINTS)

        for index in range(3):
            asyncio.run(state.ensure_var_field_loaded(index))

        genes = state.get_fields("var")
        assert genes[0].payload.values is None
        assert genes[1].is_loaded and genes[2].is_loaded
        assert state.get_cache_stats()["var"]["size"] == 2

        reloaded = asyncio.run(state.ensure_var_field_loaded(0))
        assert len(reloaded.payload.values) == N_POINTS
        assert var_loader.calls == ["CD3E", "MS4A1", "GAPDH", "CD3E"]

    def test_active_field_survives_eviction(self, viewer, dimension_manager, obs_loader, var_loader):
        state = DataState(viewer=viewer, dimension_manager=dimension_manager,
                          obs_loader=obs_loader, var_loader=var_loader,
                          config=EngineConfig(var_cache_size=1))
        state.load_dataset(make_obs_fields(), make_var_fields(), point_count=N_POINTS)

        asyncio.run(state.set_active_var_field(0))
        asyncio.run(state.ensure_var_field_loaded(1))
        assert state.get_active_field().is_loaded

    def test_alias_shares_source_values(self, state):
        result = asyncio.run(state.duplicate_field(1))
        assert result["type"] == "success"
        alias = state.get_field(result["field_index"])
        assert alias.is_alias
        assert alias.key == "score (copy)"

        asyncio.run(state.ensure_field_loaded(result["field_index"]))
        source = state.get_field(1)
        assert alias.payload.values is source.payload.values

    def test_unload_var_field(self, state):
        asyncio.run(state.set_active_var_field(0))
        assert state.unload_var_field(0, preserve_active=True) is False
        assert state.unload_var_field(0) is True
        assert state.get_active_field() is None
        assert state.get_field(0, "var").payload.values is None
