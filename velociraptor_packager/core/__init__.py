"""Core configuration, data model and pipeline orchestration."""
