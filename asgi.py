"""
asgi.py -- Application assembly for the Immobilier API.

This is the only place a Settings object is built from the environment.
Everything else receives it from api.main.create_app().

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app
from core.config import Settings

app = create_app(Settings())
