"""
asgi.py -- ASGI entry point for Keygate.

The auth library (auth/, cache/) has no knowledge of HTTP; api/main.py
adapts it to FastAPI. This module only exposes the assembled app to the
server.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
