from __future__ import annotations

import argparse

import uvicorn

from servewrap.config import get_settings
from servewrap.observability.logging import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the servewrap demo application")
    parser.add_argument("--host", default="127.0.0.1", help="Listen address")
    parser.add_argument("--port", type=int, default=8080, help="Listen port")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    uvicorn.run("servewrap.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
