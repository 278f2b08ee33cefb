from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

from errors import ConfigError
from logging_utils import configure_logging
from settings import load_settings


def _env_flag(name: str, default: str = "0") -> bool:
    value = os.getenv(name, default)
    return value.strip().lower() in {"1", "true", "yes", "on"}


def main() -> int:
    load_dotenv()
    log_path = configure_logging()
    if log_path:
        print(f"Logging to {log_path}")

    # Fail fast before uvicorn starts importing the factory
    try:
        load_settings()
    except ConfigError as exc:
        logging.getLogger(__name__).error("Missing environment variables. Check your .env file. %s", exc)
        return 1

    host = os.getenv("FORWARDER_HOST", "localhost")
    port = int(os.getenv("PORT", "3000"))
    reload = _env_flag("FORWARDER_DEV_RELOAD", "0")
    log_level = os.getenv("FORWARDER_UVICORN_LOG_LEVEL", "info")

    uvicorn.run(
        "app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
