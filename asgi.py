"""
asgi.py -- ASGI entry point for the EstateHub auth service.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so deployment tooling has one stable import
path even if the application module is reorganized.
"""

from api.main import app

__all__ = ["app"]
