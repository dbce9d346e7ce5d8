"""
asgi.py -- ASGI entry point for Portcullis.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers and tests import the same
object: api/main.py builds the app, this module only exposes it.
"""

from api.main import app

__all__ = ["app"]
