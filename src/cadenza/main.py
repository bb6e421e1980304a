"""Process entry point: configure logging and serve the API."""

from __future__ import annotations

import uvicorn

from cadenza.api.app import create_app
from cadenza.core.config import AppSettings
from cadenza.core.logging import configure_logging
from cadenza.runtime import build_runtime


def main() -> None:
    settings = AppSettings()
    configure_logging(settings.log_level)
    app = create_app(build_runtime(settings))
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_config=None)


if __name__ == "__main__":
    main()
