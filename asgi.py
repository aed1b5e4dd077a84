"""
asgi.py -- Application assembly for the Toolcraft credential service.

The ASGI entry point servers import. Keeping it separate from api/main.py
leaves room to mount other routers (e.g. a web UI) without touching the API.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
