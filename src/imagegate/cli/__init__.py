"""imagegate command-line interface."""

from imagegate.cli.app import app

__all__ = ["app"]
