import asyncio
import logging
import sys
import time

from . import config
from .bridge import Bridge

logging.basicConfig(
    level=config.LOG_LEVEL,
    format=config.LOG_FORMAT,
    datefmt=config.LOG_DATEFMT
)
logger = logging.getLogger("Bridge")


def main():
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(
            asyncio.WindowsSelectorEventLoopPolicy())

    while True:
        try:
            bridge = Bridge()
            asyncio.run(bridge.run())
            break
        except KeyboardInterrupt:
            logger.info("Bridge stopped by user.")
            break
        except Exception as e:
            logger.error(f"BRIDGE CRASHED: {e}")
            logger.info(f"Restarting bridge in {config.RESTART_DELAY} seconds...")
            time.sleep(config.RESTART_DELAY)


if __name__ == "__main__":
    main()
