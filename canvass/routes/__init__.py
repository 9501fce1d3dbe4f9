"""Routes package for FastAPI endpoints.

This package contains all API route modules for the Canvass intake service.
"""

from canvass.routes import health, responses

__all__ = ["health", "responses"]
