"""Reporting utilities for beliefnets."""

from .artifacts import write_manifest
from .metrics import ConsoleSink, CsvSink, JsonlSink
from .plots import PlotAdapter
from .summary import write_summary

__all__ = ["ConsoleSink", "CsvSink", "JsonlSink", "PlotAdapter", "write_manifest", "write_summary"]
