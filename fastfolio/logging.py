"""
Logging configuration.
Uvicorn and application logger levels; callback rejections are logged at WARNING,
unexpected handler failures with logger.exception (fastfolio/api/callbacks.py).
"""
import logging
import sys


def setup_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
) -> None:
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=format_string,
        stream=sys.stdout,
        force=True,
    )
    # Uvicorn loggers: keep access and error levels aligned
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    logging.getLogger("fastfolio").setLevel(level)
