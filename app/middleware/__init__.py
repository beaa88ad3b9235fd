"""Application middleware registration helpers."""

from __future__ import annotations

from fastapi import FastAPI

from .errors import setup_exception_handlers


def install_middleware(app: FastAPI) -> None:
    """Install the exception handlers on the provided application."""

    setup_exception_handlers(app)


__all__ = ["install_middleware"]
