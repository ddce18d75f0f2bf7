"""I/O utilities for loading session data and saving results."""

from .loader import SessionLoader, export_region_results, load_region, save_searchlight_results

__all__ = ["SessionLoader", "export_region_results", "load_region", "save_searchlight_results"]
