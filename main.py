"""
netlayer demo entry point
Builds an ApiClient from the environment and performs a cached request.
"""

import asyncio
import sys

from loguru import logger

from netlayer.services import ApiClient, ServiceError
from netlayer.settings import global_settings


async def main(path: str) -> int:
    """Fetch ``path`` twice to show the cache, then print client health."""
    logger.info(f"Starting netlayer against {global_settings.api_base_url}")

    async with ApiClient(global_settings) as client:
        try:
            data = await client.request(path, use_cache=True, loading=False)
            logger.info(f"Response: {data}")

            # Served from the cache
            await client.request(path, use_cache=True, loading=False)
        except ServiceError as e:
            logger.error(f"Request failed [{e.kind.value}]: {e}")
            return 1
        finally:
            logger.info(f"Health: {client.get_health_status()}")

    logger.info("netlayer stopped")
    return 0


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else "/v1/users/me"
    sys.exit(asyncio.run(main(target)))
