from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

DEFAULT_LOG_PATH = "/var/log/airgap-deployer.log"
FALLBACK_LOG_NAME = "airgap-deployer.log"

_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)


def _open_log_file(log_path: str) -> Tuple[logging.Handler, str]:
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        # Unprivileged runs (staging roots, dry runs) cannot write /var/log.
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Send every module's log records to the deployment log.

    Safe to call more than once: handlers are attached on the first call only,
    later calls just adjust the level. Returns the log file actually in use.
    """

    root = logging.getLogger()
    root.setLevel(level)

    in_use = getattr(root, "_airgap_log_path", None)
    if in_use is not None:
        return in_use

    file_handler, in_use = _open_log_file(log_path)
    handlers = [file_handler]
    if also_console:
        handlers.append(logging.StreamHandler())

    for h in handlers:
        h.setFormatter(_FORMAT)
        root.addHandler(h)
    setattr(root, "_airgap_log_path", in_use)

    if in_use != log_path:
        logging.getLogger(__name__).warning("Cannot write %s; logging to %s instead", log_path, in_use)
    return in_use
