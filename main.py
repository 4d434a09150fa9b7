"""
Decision Workflow API 主入口
"""
import logging

import uvicorn

from decision_workflow.config import configure_logging, load_settings
from decision_workflow.api.app import create_app


settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = create_app(settings=settings)


if __name__ == "__main__":
    logger.info(f"Serving on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
