"""
TOLLGATE - API Module

Production FastAPI server implementing:
- Unbilled completions over the provider fallback chain
- Billed skills with credit headers
- Job queue submission, status and download
- Admin processing and credit top-ups
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
