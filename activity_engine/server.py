"""
Activity Engine - server launcher

Starts the FastAPI app under uvicorn. Host and port come from the
``[server]`` section of the properties file; ``ACTIVITY_ENGINE_PORT``
overrides the port.
"""

import os
import socket

import uvicorn

from activity_engine.core.services.logging import get_logger
from activity_engine.core.services.settings_config_service import get_settings_service


def find_free_port(host: str, start_port: int = 8000) -> int:
    """Find a free port starting from start_port using bind()."""
    port = start_port
    while port < 65535:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((host, port))
                return port
        except OSError:
            port += 1
    return start_port


def main():
    settings = get_settings_service()
    host = settings.get("server", "host", "127.0.0.1")
    port = int(os.getenv("ACTIVITY_ENGINE_PORT") or settings.getint("server", "port", 8000))

    # Install log handlers before uvicorn starts
    logger = get_logger("server")
    port = find_free_port(host, port)
    logger.info("starting", host=host, port=port)

    uvicorn.run(
        "activity_engine.api.main:app",
        host=host,
        port=port,
        log_level="info",
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
