# 18.10.26

import logging
from typing import Optional


# External libraries
from rich.logging import RichHandler


# Internal utilities
from .config_json import config_manager


class Logger:
    _configured = False

    def __init__(self, debug: Optional[bool] = None, log_file: Optional[str] = None):
        if Logger._configured:
            return

        debug = config_manager.config.get_bool("DEFAULT", "debug") if debug is None else debug
        level = logging.DEBUG if debug else logging.WARNING

        handlers = [RichHandler(level=level, show_path=False, rich_tracebacks=True, markup=False)]

        if log_file is None and config_manager.config.get_bool("DEFAULT", "log_to_file"):
            log_file = config_manager.config.get("DEFAULT", "log_file")
        if log_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
            handlers.append(file_handler)

        logging.basicConfig(level=logging.DEBUG if log_file else level, format="%(message)s", handlers=handlers, force=True)

        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        Logger._configured = True

    def close(self) -> None:
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            handler.close()
            root_logger.removeHandler(handler)
        Logger._configured = False
