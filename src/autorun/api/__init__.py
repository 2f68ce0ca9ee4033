"""HTTP surface: run-now, cancel and run inspection over FastAPI."""

from autorun.api.app import create_app

__all__ = ["create_app"]
