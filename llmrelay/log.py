import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

_HANDLER_NAME = "llmrelay-rich"


def configure_logging(level: Union[int, str] = "INFO", console: Optional[Console] = None) -> logging.Logger:
    """
    Route `llmrelay` log records through a rich console handler.

    Calling it again only changes the level. Credentials never appear in
    records emitted by the package.

    Args:
        level: Logging level name or number.
        console: Console to render to; defaults to stderr.

    Returns:
        logging.Logger: The package logger.
    """
    logger = logging.getLogger("llmrelay")
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    if not any(h.get_name() == _HANDLER_NAME for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
