"""Integrate observability time series into analytics pipelines."""

__version__ = "0.1.0"
