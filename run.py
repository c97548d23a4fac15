"""Uvicorn launcher for the workflow service.

Usage:
    python run.py              # development (reload enabled)
    python run.py --no-reload  # production-like
"""

import sys

import uvicorn

from app.core.config import settings

if __name__ == "__main__":
    reload = "--no-reload" not in sys.argv
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=reload,
    )
