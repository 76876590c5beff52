import json
import logging
import os

from engine.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILENAME = "myousync.log"

_NOISY_LOGGERS = (
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "google.auth.transport.requests",
    "urllib3.connectionpool",
    "apscheduler.executors.default",
)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False))
    except (TypeError, ValueError) as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")


def setup_logging(log_dir, *, level=logging.INFO):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(level)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    formatter = logging.Formatter(LOG_FORMAT)
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_path
