import logging
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def setup_logging(log_level: str = LOG_LEVEL) -> logging.Logger:
    """Configure the root logger once with a console handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Prevent duplicate handlers when uvicorn reloads
    if root.handlers:
        return root

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    root.addHandler(handler)
    return root
