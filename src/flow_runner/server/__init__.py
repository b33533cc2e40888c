"""HTTP API for authoring and executing FlowScripts."""

from .api import create_app

__all__ = ["create_app"]
