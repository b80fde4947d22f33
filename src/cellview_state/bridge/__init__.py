"""
Bridge module for cellview_state.

Connects the state engine to AnnData objects and to UI command callbacks.
"""

from .anndata_bridge import (
    categorical_codes,
    create_data_state,
    fields_from_obs,
    fields_from_var,
    embeddings_from_obsm,
    make_obs_loader,
    gene_values,
    make_var_loader,
)

from .commands import COMMANDS, dispatch_command, run_command

__all__ = [
    # AnnData
    "categorical_codes",
    "create_data_state",
    "fields_from_obs",
    "fields_from_var",
    "embeddings_from_obsm",
    "make_obs_loader",
    "gene_values",
    "make_var_loader",

    # Commands
    "COMMANDS",
    "dispatch_command",
    "run_command",
]
