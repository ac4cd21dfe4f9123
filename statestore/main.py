"""
Learning State Store - server entry point.

    python -m statestore.main --config statestore.yaml
    uvicorn statestore.main:build_app --factory
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api import create_app
from .config import load_config
from .service import StateService

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("state_store")


def build_app(config_file: Optional[Path] = None) -> FastAPI:
    """Construct the single service instance and the app that owns it."""
    config = load_config(config_file)
    logger.info(f"Learning State Store v{__version__} (state file: {config.state_path})")
    return create_app(StateService(config))


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Learning State Store server")
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(argv)

    import uvicorn

    config = load_config(args.config)
    app = create_app(StateService(config))
    uvicorn.run(app, host=args.host or config.host, port=args.port or config.port)


# -----------------------------------------------------------------------------
# Main Entry Point
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    main()
