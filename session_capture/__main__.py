"""
Command-line entry point.

    session-capture --config capture.yaml --host 0.0.0.0 --port 8000
"""

import argparse
import sys

import uvicorn
from loguru import logger

from .api.main import configure_logging, create_app
from .config import load_config
from .errors import ConfigError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Session Capture Orchestrator")
    parser.add_argument("--config", help="YAML configuration file (default: $CAPTURE_CONFIG)")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 2

    configure_logging(config.log_level, config.log_file)
    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
