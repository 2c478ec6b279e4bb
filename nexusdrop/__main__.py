"""Run the NexusDrop API with uvicorn."""

from __future__ import annotations

import uvicorn

from nexusdrop.config import get_env, load_config
from nexusdrop.logging import configure_logging

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


def main() -> None:
    config = load_config()
    configure_logging(config.log_level, config.log_file)
    try:
        port = int(get_env("PORT") or DEFAULT_PORT)
    except ValueError:
        port = DEFAULT_PORT
    uvicorn.run(
        "nexusdrop.main:create_app",
        factory=True,
        host=get_env("HOST") or DEFAULT_HOST,
        port=port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
