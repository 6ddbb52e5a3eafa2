"""
asgi.py -- ASGI entry point for the auth service.

Downstream resource routers (CRUD handlers) belong here, not in api/main.py,
which stays limited to the auth surface.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
