"""
Build a DataState from an AnnData object.

Obs columns become fields (categorical for categorical/string/bool columns,
continuous for numeric ones), genes become var fields, and embeddings in
``obsm`` feed an in-memory dimension manager. Arrays are read lazily by the
loaders on first use.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from ..config import EngineConfig, UNASSIGNED_CODE
from ..errors import FieldLoadError, ValidationError
from ..fields import Field, FieldSource
from ..helpers.interfaces import InMemoryDimensionManager, LoadedArrays, NotificationCenter, Viewer
from ..state.data_state import DataState

logger = logging.getLogger(__name__)

EMBEDDING_KEYS = ("X_umap", "X_tsne", "X_pca", "spatial", "X_spatial")
OUTLIER_SUFFIX = "_outlier_quantile"
UINT16_UNASSIGNED = np.iinfo(np.uint16).max


# =============================================================================
# Obs columns
# =============================================================================

def is_categorical_column(series: pd.Series) -> bool:
    return (
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(series)
        or pd.api.types.is_object_dtype(series)
        or pd.api.types.is_string_dtype(series)
    )


def _as_categorical(series: pd.Series) -> pd.Categorical:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return series.values
    return pd.Categorical(series.astype(str).where(series.notna()))


def categorical_codes(series: pd.Series) -> Tuple[List[str], np.ndarray]:
    """Category labels and codes; missing values map to the unassigned sentinel."""
    cat = _as_categorical(series)
    categories = [str(c) for c in cat.categories]
    raw = np.asarray(cat.codes, dtype=np.int64)
    if len(categories) <= UNASSIGNED_CODE:
        codes = np.where(raw < 0, UNASSIGNED_CODE, raw).astype(np.uint8)
    else:
        codes = np.where(raw < 0, UINT16_UNASSIGNED, raw).astype(np.uint16)
    return categories, codes


def fields_from_obs(obs: pd.DataFrame, outlier_suffix: str = OUTLIER_SUFFIX) -> List[Field]:
    """Field metadata for every obs column; no per-cell arrays are read."""
    fields = []
    for column in obs.columns:
        key = str(column)
        if key.endswith(outlier_suffix):
            continue
        series = obs[column]
        if is_categorical_column(series):
            categories = [str(c) for c in _as_categorical(series).categories]
            fields.append(Field.categorical(key, categories, source=FieldSource.OBS))
        elif pd.api.types.is_numeric_dtype(series):
            fields.append(Field.continuous(key, source=FieldSource.OBS))
        else:
            logger.debug("Skipping obs column %r with dtype %s", key, series.dtype)
    return fields


def fields_from_var(var_names: Sequence[str]) -> List[Field]:
    return [Field.continuous(str(gene), source=FieldSource.VAR) for gene in var_names]


# =============================================================================
# Loaders
# =============================================================================

def gene_values(adata, gene: str, layer: Optional[str] = None) -> np.ndarray:
    """Dense float32 expression of one gene across all cells."""
    if gene not in adata.var_names:
        raise FieldLoadError(f"Gene '{gene}' not found")
    j = int(np.where(adata.var_names == gene)[0][0])
    X = adata.layers[layer] if layer is not None else adata.X
    if sp.issparse(X):
        v = np.asarray(X[:, j].toarray()).ravel()
    else:
        v = np.asarray(X[:, j]).ravel()
    return v.astype(np.float32)


def make_obs_loader(adata, outlier_suffix: str = OUTLIER_SUFFIX):
    async def load_obs_field(field: Field) -> LoadedArrays:
        key = field.registry_key
        if key not in adata.obs.columns:
            raise FieldLoadError(f"Column '{key}' not found")
        series = adata.obs[key]
        quantile_column = f"{key}{outlier_suffix}"
        quantiles = None
        if quantile_column in adata.obs.columns:
            quantiles = np.asarray(adata.obs[quantile_column], dtype=np.float32)
        if field.is_categorical:
            _, codes = categorical_codes(series)
            return LoadedArrays(codes=codes, outlier_quantiles=quantiles)
        values = np.asarray(pd.to_numeric(series, errors="coerce"), dtype=np.float32)
        return LoadedArrays(values=values, outlier_quantiles=quantiles)
    return load_obs_field


def make_var_loader(adata, layer: Optional[str] = None):
    async def load_var_field(field: Field) -> LoadedArrays:
        return LoadedArrays(values=gene_values(adata, field.registry_key, layer))
    return load_var_field


# =============================================================================
# Embeddings
# =============================================================================

def embeddings_from_obsm(adata, embedding_key: Optional[str] = None) -> Dict[int, np.ndarray]:
    """Embeddings by dimension from one ``obsm`` entry.

    A 3+ column embedding provides both 2D and 3D views.
    """
    keys = [embedding_key] if embedding_key else [k for k in EMBEDDING_KEYS if k in adata.obsm]
    if embedding_key and embedding_key not in adata.obsm:
        raise ValidationError(f"Embedding '{embedding_key}' not found in obsm")
    if not keys:
        return {}
    coords = np.asarray(adata.obsm[keys[0]], dtype=np.float32)
    if coords.ndim != 2 or coords.shape[1] < 1:
        return {}
    embeddings = {}
    for dim in (1, 2, 3):
        if coords.shape[1] >= dim and (dim > 1 or coords.shape[1] == 1):
            embeddings[dim] = coords[:, :dim]
    logger.info("Using embedding %r (%d columns)", keys[0], coords.shape[1])
    return embeddings


# =============================================================================
# Entry point
# =============================================================================

def create_data_state(
    adata,
    embedding_key: Optional[str] = None,
    layer: Optional[str] = None,
    include_var: bool = True,
    viewer: Optional[Viewer] = None,
    notifications: Optional[NotificationCenter] = None,
    config: Optional[EngineConfig] = None,
) -> DataState:
    """
    Create a DataState wired to an AnnData object.

    Args:
        adata: AnnData object
        embedding_key: obsm key to use; defaults to the first of X_umap,
            X_tsne, X_pca, spatial
        layer: Layer to read gene expression from instead of X
        include_var: Expose genes as var fields
        viewer: Render sink
        notifications: Load progress sink
        config: Engine tunables

    Returns:
        DataState with the dataset loaded
    """
    if not isinstance(adata, ad.AnnData):
        raise ValidationError(f"Expected an AnnData object, got {type(adata).__name__}")
    embeddings = embeddings_from_obsm(adata, embedding_key)
    dimension_manager = InMemoryDimensionManager(embeddings) if embeddings else None
    state = DataState(
        viewer=viewer,
        dimension_manager=dimension_manager,
        notifications=notifications,
        obs_loader=make_obs_loader(adata),
        var_loader=make_var_loader(adata, layer) if include_var else None,
        config=config,
    )
    var_fields = fields_from_var(adata.var_names) if include_var else []
    state.load_dataset(fields_from_obs(adata.obs), var_fields, point_count=adata.n_obs)
    return state
