"""
asgi.py -- ASGI entry point for TenantAuth.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
