"""Main entry point for the gateway."""

import sys

import structlog
import uvicorn

from llmgate.config import get_settings
from llmgate.logging import setup_logging

logger = structlog.get_logger()


def main() -> None:
    """Run the gateway server.

    Refuses to start without provider credentials.
    """
    settings = get_settings()
    setup_logging()

    if not settings.provider_api_key:
        logger.error("provider_api_key_missing", env_var="LLMGATE_PROVIDER_API_KEY")
        sys.exit(1)

    logger.info(
        "llmgate_configured",
        default_model=settings.default_model,
        fallback_models=settings.fallback_models,
        breaker_failure_threshold=settings.breaker_failure_threshold,
        redis_host=settings.redis_host,
    )

    uvicorn.run(
        "llmgate.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
