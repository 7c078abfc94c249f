"""Soundwave backend application.

The ASGI application lives in :mod:`app.main` (``uvicorn app.main:app``).
"""
