"""Ad pipeline orchestration API server: python -m adpipe.api

Serves the /api routes (project intents, worker callbacks, impact and
progress) with host and port taken from the ``server`` config section.
"""
import logging

import uvicorn
from adpipe.config import settings

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting ad pipeline API on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "adpipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
