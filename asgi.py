"""
asgi.py -- ASGI entry point for the Coco Instruments API.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 1

Login throttling state is held in process memory, so run a single worker
per database unless the rate-limit store is moved out of process.
"""

from api.main import app

__all__ = ["app"]
