import asyncio
import logging
import os
import sys

from loguru import logger


class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(logger_name=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


LOG_LEVEL = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO"))
JSON_LOGS = True if os.environ.get("JSON_LOGS", "0") == "1" else False


def create_logger():
    logger.remove()
    format = (
        "<green>{time:YYMMDD HH:mm:ss}</green> | <level>{level: <8}</level> |"
        " {extra[logger_name]} | <level>{message}</level>"
    )
    logger.configure(extra={"logger_name": "default"})
    logger.add(sys.stderr, format=format, level=LOG_LEVEL, serialize=JSON_LOGS)
    seen = set()
    for logger_name in ["uvicorn", "uvicorn.access", "pinrelay"]:
        logger_name = logger_name.split(".")[0]
        if logger_name not in seen:
            seen.add(logger_name)
            logging.getLogger(logger_name).handlers = [InterceptHandler()]
            logging.getLogger(logger_name).propagate = False
    logging.getLogger("uvicorn.access").handlers = [InterceptHandler()]
    logging.getLogger("pinrelay").setLevel(LOG_LEVEL)
    return logging.getLogger("pinrelay")


_fault_logger = logging.getLogger("pinrelay.faults")


def log_unhandled_loop_exception(
    loop: asyncio.AbstractEventLoop, context: dict
):
    """
    Loop-wide exception handler: anything that escaped a task ends up here.
    The fault is logged and the process keeps running.
    """
    exc = context.get("exception")
    message = context.get("message", "unhandled exception in event loop")
    if exc is not None:
        _fault_logger.error(
            "%s: %s: %s",
            message,
            type(exc).__name__,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    else:
        _fault_logger.error(message)


def install_fault_handler(loop: asyncio.AbstractEventLoop = None):
    loop = loop or asyncio.get_running_loop()
    loop.set_exception_handler(log_unhandled_loop_exception)
