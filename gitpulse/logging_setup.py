"""Process-wide logging configuration."""

import logging
from logging.handlers import RotatingFileHandler

from gitpulse.settings import Settings

_CONFIGURED = False


def configure_logging(settings: Settings, *, verbose: bool = False) -> None:
    """Configure gitpulse logging.

    - Logs to stderr.
    - Logs to a rotating file under the data directory, when enabled.

    Safe to call multiple times; it will not duplicate handlers.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(level)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    if settings.log_to_file:
        log_path = settings.log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            if not any(
                isinstance(h, RotatingFileHandler)
                and getattr(h, "baseFilename", None) == str(log_path)
                for h in root.handlers
            ):
                file_handler = RotatingFileHandler(
                    filename=str(log_path),
                    maxBytes=settings.log_max_bytes,
                    backupCount=settings.log_backup_count,
                    encoding="utf-8",
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                root.addHandler(file_handler)
        except OSError as exc:
            logging.getLogger(__name__).warning("File logging disabled: %s", exc)

    _CONFIGURED = True
