"""Command-line entrypoint for running the edgecache proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import EdgeCacheSettings
from .app import create_app


def main() -> None:
    settings = EdgeCacheSettings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_keep_alive=60,
    )


if __name__ == "__main__":
    main()
