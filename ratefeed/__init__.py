"""Vendor rate acquisition and normalization for vehicle-leasing funders."""

from .core.orchestrator import (
    Orchestrator,
    capture_session,
    run_single_quote,
    run_batch,
    run_bulk_export,
    run_scrape,
)

__version__ = "0.1.0"

__all__ = [
    "Orchestrator",
    "capture_session",
    "run_single_quote",
    "run_batch",
    "run_bulk_export",
    "run_scrape",
]
