"""HTTP transport for the stoch ingestion and generation ports."""

from .api_server import create_api_server
from .serve import main as serve_main

__all__ = ["create_api_server", "serve_main"]
