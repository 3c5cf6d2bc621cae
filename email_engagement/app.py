"""Entry point for the tracking server.

When executed with ``python -m email_engagement.app`` this module reads the
settings from the environment, configures logging and serves the FastAPI
application built by :func:`email_engagement.tracking.server.create_app`
with uvicorn.
"""

from __future__ import annotations

import uvicorn

from email_engagement.config import TrackingSettings
from email_engagement.logging_setup import configure_logging
from email_engagement.tracking.server import create_app


def main() -> None:
    settings = TrackingSettings.from_env()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
