"""
Read API entrypoint: ``python -m api.service``.
PORT (set by most container platforms) wins over FH_API_PORT.
"""
from __future__ import annotations

import os

import uvicorn

from shared.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "api.app:app",
        host=settings.api_host,
        port=int(os.environ.get("PORT", settings.api_port)),
        workers=settings.api_workers,
        log_level=settings.log_level.lower(),
        access_log=False,
        timeout_keep_alive=30,
    )


if __name__ == "__main__":
    main()
