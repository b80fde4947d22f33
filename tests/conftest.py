"""Shared fixtures: an 8-cell dataset with three obs columns and three genes."""

import asyncio

import numpy as np
import pytest

from cellview_state import (
    DataState,
    Field,
    FieldSource,
    InMemoryDimensionManager,
    LoadedArrays,
    LoggingNotificationCenter,
    NullViewer,
)

N_POINTS = 8

CLUSTER_CODES = np.array([0, 1, 2, 0, 1, 2, 0, 1], dtype=np.uint8)
BATCH_CODES = np.array([0, 0, 0, 0, 1, 1, 1, 1], dtype=np.uint8)
SCORE_VALUES = np.arange(N_POINTS, dtype=np.float32)
SCORE_QUANTILES = np.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.95], dtype=np.float32)


class DictLoader:
    """Async loader over a dict of arrays that records every call."""

    def __init__(self, arrays):
        self.arrays = arrays
        self.calls = []

    async def __call__(self, field):
        self.calls.append(field.registry_key)
        await asyncio.sleep(0)
        return self.arrays[field.registry_key]


def make_obs_fields():
    return [
        Field.categorical("cluster", ["A", "B", "C"]),
        Field.continuous("score"),
        Field.categorical("batch", ["b1", "b2"]),
    ]


def make_var_fields():
    return [Field.continuous(gene, source=FieldSource.VAR) for gene in ("CD3E", "MS4A1", "GAPDH")]


@pytest.fixture
def obs_loader():
    return DictLoader({
        "cluster": LoadedArrays(codes=CLUSTER_CODES.copy()),
        "score": LoadedArrays(values=SCORE_VALUES.copy(), outlier_quantiles=SCORE_QUANTILES.copy()),
        "batch": LoadedArrays(codes=BATCH_CODES.copy()),
    })


@pytest.fixture
def var_loader():
    return DictLoader({
        "CD3E": LoadedArrays(values=np.array([5, 0, 3, 0, 1, 0, 2, 0], dtype=np.float32)),
        "MS4A1": LoadedArrays(values=np.array([0, 1, 0, 1, 0, 1, 0, 1], dtype=np.float32)),
        "GAPDH": LoadedArrays(values=np.full(N_POINTS, 2.0, dtype=np.float32)),
    })


@pytest.fixture
def dimension_manager():
    x = np.arange(N_POINTS, dtype=np.float32)
    return InMemoryDimensionManager({
        2: np.column_stack([x, x * 2]),
        3: np.column_stack([x, x * 2, np.zeros(N_POINTS, dtype=np.float32)]),
    })


@pytest.fixture
def viewer():
    return NullViewer()


@pytest.fixture
def notifications():
    return LoggingNotificationCenter()


@pytest.fixture
def state(viewer, dimension_manager, notifications, obs_loader, var_loader):
    data_state = DataState(
        viewer=viewer,
        dimension_manager=dimension_manager,
        notifications=notifications,
        obs_loader=obs_loader,
        var_loader=var_loader,
    )
    data_state.load_dataset(make_obs_fields(), make_var_fields(), point_count=N_POINTS)
    return data_state


@pytest.fixture
def active_cluster(state):
    """State with the ``cluster`` field loaded and active."""
    result = asyncio.run(state.set_active_field(0))
    assert result["type"] == "success"
    return state
