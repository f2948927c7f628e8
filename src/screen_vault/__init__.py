"""ScreenVault records the screen and keeps recordings in a chunked media store.

``create_app`` is resolved on first access, so importing the package for
capture or the command line does not import FastAPI.
"""

from __future__ import annotations

from .config import AppConfig, load_config
from .version import APP_VERSION


def __getattr__(name: str):
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["APP_VERSION", "AppConfig", "create_app", "load_config"]
