#!/usr/bin/env python3
"""
Runner:
- Loads settings from the environment / .env
- Serves the clinic app with uvicorn
- Exits with the code the WhatsApp session left behind (1 after a failed teardown)

Usage: python run.py
"""
import sys

import uvicorn

from drscreen.config import Settings
from drscreen.main import AppState, configure_logging, create_app


def run_server() -> int:
    configure_logging()
    settings = Settings.from_env()
    state = AppState(settings=settings)
    app = create_app(state)
    print(f"Starting server at http://{settings.host}:{settings.port}/home ...")
    server = uvicorn.Server(uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None))
    server.run()
    return state.exit_code


if __name__ == "__main__":
    sys.exit(run_server())
