"""Tests for the AnnData bridge and command dispatch."""

import asyncio

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from cellview_state.bridge import (
    categorical_codes,
    create_data_state,
    embeddings_from_obsm,
    fields_from_obs,
    gene_values,
    run_command,
)
from cellview_state.errors import ValidationError


@pytest.fixture
def adata():
    n_cells = 6
    obs = pd.DataFrame(
        {
            "leiden": pd.Categorical(["0", "1", "0", "2", "1", "0"]),
            "n_genes": [100, 250, 80, 300, 120, 90],
            "condition": ["ctrl", None, "stim", "ctrl", "stim", "ctrl"],
            "n_genes_outlier_quantile": [0.1, 0.9, 0.05, 0.99, 0.3, 0.2],
        },
        index=[f"cell_{i}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=["CD3E", "MS4A1", "GAPDH"])
    X = sp.csr_matrix(np.array([
        [1, 0, 2],
        [0, 3, 2],
        [4, 0, 2],
        [0, 0, 2],
        [5, 1, 2],
        [0, 0, 2],
    ], dtype=np.float32))
    data = ad.AnnData(X=X, obs=obs, var=var)
    data.obsm["X_umap"] = np.arange(n_cells * 2, dtype=np.float32).reshape(n_cells, 2)
    return data


class TestFieldDiscovery:
    def test_fields_from_obs(self, adata):
        fields = fields_from_obs(adata.obs)
        assert [f.key for f in fields] == ["leiden", "n_genes", "condition"]
        assert [f.is_categorical for f in fields] == [True, False, True]
        assert fields[0].categories == ["0", "1", "2"]

    def test_missing_values_become_unassigned(self, adata):
        categories, codes = categorical_codes(adata.obs["condition"])
        assert categories == ["ctrl", "stim"]
        assert codes.dtype == np.uint8
        assert codes.tolist() == [0, 255, 1, 0, 1, 0]

    def test_gene_values_from_sparse_matrix(self, adata):
        assert gene_values(adata, "CD3E").tolist() == [1, 0, 4, 0, 5, 0]

    def test_three_column_embedding_gives_two_views(self, adata):
        adata.obsm["X_pca"] = np.zeros((adata.n_obs, 5), dtype=np.float32)
        embeddings = embeddings_from_obsm(adata, "X_pca")
        assert sorted(embeddings) == [2, 3]

    def test_unknown_embedding_is_rejected(self, adata):
        with pytest.raises(ValidationError):
            embeddings_from_obsm(adata, "X_missing")


class TestCreateDataState:
    def test_builds_state_from_anndata(self, adata):
        state = create_data_state(adata)
        assert state.point_count == 6
        assert [f.key for f in state.get_fields("var")] == ["CD3E", "MS4A1", "GAPDH"]
        assert state.get_dimension_level() == 2

    def test_rejects_non_anndata(self):
        with pytest.raises(ValidationError):
            create_data_state({"X": None})

    def test_outlier_column_feeds_quantiles(self, adata):
        state = create_data_state(adata)
        field = asyncio.run(state.ensure_field_loaded(1))
        assert field.outlier_quantiles is not None
        assert field.outlier_quantiles[3] == pytest.approx(0.99)

    def test_without_var(self, adata):
        state = create_data_state(adata, include_var=False)
        assert state.get_fields("var") == []


class TestCommands:
    def test_dispatches_to_data_state(self, adata):
        state = create_data_state(adata)
        result = run_command(state, "set_active_field", {"index": 0})
        assert result["type"] == "success"
        assert result["field"]["key"] == "leiden"

        result = run_command(state, "set_visibility_for_category",
                             {"field_index": 0, "category_index": 0, "visible": False})
        assert result["type"] == "success"
        assert run_command(state, "get_filtered_count") == {"shown": 3, "total": 6}

    def test_non_dict_results_are_wrapped(self, adata):
        state = create_data_state(adata)
        result = run_command(state, "get_view_ids")
        assert result == {"type": "result", "command": "get_view_ids", "value": ["live"]}

    def test_unknown_command(self, adata):
        state = create_data_state(adata)
        assert run_command(state, "load_dataset")["type"] == "error"

    def test_bad_arguments(self, adata):
        state = create_data_state(adata)
        result = run_command(state, "rename_field", {"index": 0})
        assert result["type"] == "error"
        assert "rename_field" in result["message"]

    def test_result_size_limit(self, adata):
        state = create_data_state(adata)
        result = run_command(state, "get_snapshot_payload", {"compress": False}, max_result_size=10)
        assert result["type"] == "error"
        assert result["message"].startswith("Result too large")

    def test_var_commands(self, adata):
        state = create_data_state(adata)
        result = run_command(state, "set_active_var_field", {"index": 0})
        assert result["legend"]["kind"] == "continuous"
        run_command(state, "apply_continuous_filter",
                    {"field_index": 0, "min_value": 1, "max_value": 4, "source": "var"})
        assert run_command(state, "get_filtered_count")["shown"] == 2
