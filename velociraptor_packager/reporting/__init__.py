"""Build statistics and report export."""

from .exporter import export_report
from .generator import build_report

__all__ = ["build_report", "export_report"]
