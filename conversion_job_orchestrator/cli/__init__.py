"""
CLI package for the Conversion Job Orchestrator

Provides command-line interface for running job manifests and inspecting history.
"""

from .main import main, cli

__all__ = ["main", "cli"]
