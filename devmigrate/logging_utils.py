from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .constants import DEFAULT_LOG_PATH

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int | str = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure root logging for a migration process.

    Every resume after a reboot is a fresh process, so the log file is opened
    in append mode and is the only place the whole run is visible. When the
    requested path is not writable, a file in the working directory is used
    instead.

    Returns the actual file path being used.
    """

    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, "_devmigrate_configured", False):
        return getattr(root, "_devmigrate_log_path", log_path)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    handlers: list[logging.Handler] = []

    chosen_path = log_path
    file_handler: Optional[logging.Handler]
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
    except OSError:
        chosen_path = str(Path.cwd() / "devmigrate.log")
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        root.addHandler(h)

    setattr(root, "_devmigrate_configured", True)
    setattr(root, "_devmigrate_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
