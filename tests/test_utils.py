"""Tests for label helpers, buffer codecs and the LRU cache."""

import numpy as np
import pytest

from cellview_state.tools import LRUCache
from cellview_state.tools.utils import (
    make_unique_label,
    pack_buffer,
    parse_field_id,
    rle_decode,
    rle_encode,
    serialize_result,
    unpack_buffer,
)


class TestLabels:
    def test_unique_label_is_case_insensitive(self):
        assert make_unique_label("Unassigned", ["unassigned"]) == "Unassigned 2"
        assert make_unique_label("x", ["x", "X 2"]) == "x 3"
        assert make_unique_label("new", ["old"]) == "new"
        assert make_unique_label("   ", ["a"]) == ""

    def test_parse_field_id(self):
        assert parse_field_id("obs:cell type") == ("obs", "cell type")
        with pytest.raises(ValueError):
            parse_field_id("no-colon")


class TestBuffers:
    def test_rle_splits_long_runs(self):
        codes = np.zeros(70000, dtype=np.uint8)
        runs = rle_encode(codes)
        assert runs == [[0, 65535], [0, 4465]]
        assert np.array_equal(rle_decode(runs, 70000), codes)

    def test_rle_decode_pads_to_length(self):
        out = rle_decode([[3, 2]], length=4)
        assert out.tolist() == [3, 3, 0, 0]

    def test_pack_buffer_compressed(self):
        arr = np.linspace(0, 1, 50, dtype=np.float32)
        packed = pack_buffer(arr, compress=True)
        assert np.array_equal(unpack_buffer(packed, np.float32, compressed=True), arr)

    def test_serialize_result(self):
        result = serialize_result({"a": np.int64(3), "b": np.array([1, 2]), "c": {1, 2}})
        assert result["a"] == 3
        assert result["b"] == [1, 2]
        assert sorted(result["c"]) == [1, 2]


class TestLRUCache:
    def test_evicts_least_recently_used(self):
        evicted = []
        cache = LRUCache(max_size=2, on_evict=lambda k, v: evicted.append(k))
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1
        cache.set("c", 3)

        assert evicted == ["b"]
        assert cache.keys() == ["a", "c"]
        assert len(cache) == 2

    def test_delete_does_not_call_on_evict(self):
        evicted = []
        cache = LRUCache(max_size=2, on_evict=lambda k, v: evicted.append(k))
        cache.set("a", 1)
        assert cache.delete("a")
        assert evicted == []
        assert "a" not in cache

    def test_stats(self):
        cache = LRUCache(max_size=1)
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)
