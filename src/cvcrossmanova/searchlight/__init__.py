"""Searchlight: neighborhood templates, checkpointing and the sliding-window runner."""

from .template import SearchlightTemplate, build_searchlight, searchlight_size, searchlight_size_table
from .checkpoint import parameter_hash, checkpoint_path
from .runner import SearchlightResult, run_searchlight

__all__ = [
    "SearchlightTemplate",
    "build_searchlight",
    "searchlight_size",
    "searchlight_size_table",
    "parameter_hash",
    "checkpoint_path",
    "SearchlightResult",
    "run_searchlight",
]
