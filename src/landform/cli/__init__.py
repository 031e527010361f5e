"""Command-line interface."""

from landform.cli.main import cli, main

__all__ = ['cli', 'main']
