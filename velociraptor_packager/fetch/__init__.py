"""Validated tool fetching."""

from .fetcher import FetchSummary, ToolFetcher, tool_file_name

__all__ = ["FetchSummary", "ToolFetcher", "tool_file_name"]
