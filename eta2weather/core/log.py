import logging
from logging.handlers import RotatingFileHandler

from .config import settings

CONSOLE_HANDLER = "eta2weather.console"
FILE_HANDLER = "eta2weather.file"


def configure_logging() -> None:
    """Install console and rotating file handlers on the root logger.

    Calling it again (each lifespan start does) replaces the handlers from
    the previous call instead of stacking new ones.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if handler.get_name() in (CONSOLE_HANDLER, FILE_HANDLER):
            root.removeHandler(handler)
            handler.close()

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    console = logging.StreamHandler()
    console.set_name(CONSOLE_HANDLER)
    console.setFormatter(fmt)
    root.addHandler(console)

    # months of unattended running on a small box
    logfile = RotatingFileHandler(settings.log_file, maxBytes=2_000_000, backupCount=5)
    logfile.set_name(FILE_HANDLER)
    logfile.setFormatter(fmt)
    root.addHandler(logfile)

    for noisy in ("httpx", "watchfiles"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
