"""
Backend store entry point.

    python -m buryscope.server.main
"""

import logging

import uvicorn

from ..config.shell import load_settings
from ..wiring import build_server_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = build_server_app(load_settings())


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
