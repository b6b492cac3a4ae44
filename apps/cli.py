import logging
import os
import sys

import dotenv
import uvicorn
from loguru import logger

from tracing.context import get_context

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | {extra[trace]}<level>{message}</level>"
)


def _add_trace(record):
    context = get_context()
    record["extra"]["trace"] = f"trace={context['trace_id']} " if "trace_id" in context else ""


def configure_logging(level: str = "INFO", log_file: str = None):
    """Console sink (plus optional rotating file) with the request trace id"""
    logger.remove()
    logger.configure(patcher=_add_trace, extra={"trace": ""})
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level, format=LOG_FORMAT, rotation="10 MB", retention=5, enqueue=True)

    # stdlib loggers (store, middleware, listeners)
    logging.basicConfig(level=level, format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")


def main():
    dotenv.load_dotenv()
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    configure_logging(level, os.getenv("LOG_FILE") or None)

    uvicorn.run(
        "apps.api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        reload=os.getenv("RELOAD", "0") == "1",
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
