from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from core.config import BACKEND_DIR


_NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def setup_logging(*, environment: str, log_dir: Path | None = None) -> None:
    """Configure application logging once per process.

    Development logs to the console at DEBUG. Production adds a rotating
    file under ``backend/logs`` (or ``log_dir``) and logs at INFO.
    """

    root = logging.getLogger()
    if root.handlers:
        return

    env = (environment or "development").lower().strip()
    level = logging.INFO if env == "production" else logging.DEBUG

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    handlers: list[logging.Handler] = [console]

    if env == "production":
        logs_dir = Path(log_dir or BACKEND_DIR / "logs")
        logs_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            logs_dir / "scheduler.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # SQL echo is far too chatty at DEBUG; enable it explicitly when needed.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
