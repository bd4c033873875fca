"""Command-line interface for moraine deployments."""

from moraine.cli.main import cli, create_provider

__all__ = ["cli", "create_provider"]
