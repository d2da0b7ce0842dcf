"""Uvicorn entrypoint for the Stratus control plane."""

from __future__ import annotations

import uvicorn

from ..common.settings import ControlPlaneSettings
from .app import create_app

app = create_app()


def main() -> None:
    settings = ControlPlaneSettings()
    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.listen_port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
