"""Entry point: ``python -m lettacord`` or the ``lettacord`` script."""

import asyncio

from loguru import logger

from lettacord.app import run
from lettacord.config.loader import load_config
from lettacord.utils.log import setup_logging


def main() -> None:
    config = load_config()
    setup_logging(config.log_level, production=config.production, log_dir=config.log_dir)
    logger.info("Starting lettacord")
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, bye")


if __name__ == "__main__":
    main()
