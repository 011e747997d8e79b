"""
Run the CA server.

Usage:
    python -m iotca [--host 0.0.0.0] [--port 3000]

All other settings come from ``IOTCA_*`` environment variables.
"""

import argparse

import uvicorn

from .config import Settings
from .logging_config import configure_logging
from .main import create_app


def main(argv=None):
    parser = argparse.ArgumentParser(prog="iotca", description="IoT Certificate Authority")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=3000)
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json, settings.log_file)
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
