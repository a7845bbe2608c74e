"""
Token-lifecycle service bootstrap.

Configures logging, validates configuration (a missing ``ENCRYPTION_KEY``
stops the process here), creates the integration table and reports which
providers are available.  Routing layers import ``get_oauth_service`` after
this has run.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from config.settings import config
from connectors.errors import ConfigurationError
from connectors.service import get_oauth_service
from database.session import init_models

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "sqlalchemy.engine", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def startup() -> None:
    service = get_oauth_service()

    logger.info("Ensuring integration table exists…")
    await init_models()

    for info in service.list_providers():
        logger.info(
            "  %-18s %s%s",
            info["provider"],
            "configured" if info["configured"] else "missing",
            f"  (group: {info['group']})" if info["group"] else "",
        )
    logger.info("Token lifecycle ready.")


def main() -> int:
    try:
        asyncio.run(startup())
    except ConfigurationError as exc:
        logger.critical("Startup aborted: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
