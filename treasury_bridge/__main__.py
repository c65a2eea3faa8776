"""Run the HTTP service: ``python -m treasury_bridge``."""

from __future__ import annotations

import uvicorn

from treasury_bridge.api import create_app
from treasury_bridge.config import get_settings
from treasury_bridge.logging_config import configure_logging


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
