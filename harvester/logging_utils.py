"""Colored, filtered console logging for harvest runs."""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


class ColoredFormatter(logging.Formatter):
    """A logging formatter that adds colors to the output."""

    LOG_LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record):
        color = self.LOG_LEVEL_COLORS.get(record.levelno)
        message = super().format(record)
        if color:
            return color + message + Colors.RESET
        return message


class ConsoleFilter(logging.Filter):
    """A logging filter that allows only progress and summary lines to the console."""

    RUNNER_PATTERNS = (
        "TASK",           # Per-task headers ("TASK 3/12 @alice -> posts")
        "DONE",           # Per-task completion
        "FAILED",         # Per-task failure
        "BATCH",          # Batch start/summary
        "━",              # Separator lines
        "Loaded",         # Selection summary
    )
    MERGER_PATTERNS = (
        "Merged",         # Classification counts
        "Writing to DB",  # Bulk write start
    )
    SCHEDULE_PATTERNS = (
        "Schedule",       # Tier/next-run updates
    )

    def filter(self, record):
        # Always allow warnings and above
        if record.levelno >= logging.WARNING:
            return True

        if record.levelno == logging.INFO:
            msg = record.getMessage()
            if record.name == "harvester.runner":
                return any(pattern in msg for pattern in self.RUNNER_PATTERNS)
            if record.name == "harvester.ingest.merger":
                return any(pattern in msg for pattern in self.MERGER_PATTERNS)
            if record.name == "harvester.schedule.rate":
                return any(pattern in msg for pattern in self.SCHEDULE_PATTERNS)

            # Allow messages from the CLI entrypoint
            if record.name == "harvester.cli":
                return True

        return False


def setup_harvest_logging(
    console_level=logging.INFO,
    file_level=logging.DEBUG,
    quiet=False,
    log_dir: Optional[Path] = None,
):
    """
    Set up logging for harvest runs with a colored, filtered console
    handler and a verbose rotating file handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if not quiet:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_level)
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        console_handler.addFilter(ConsoleFilter())
        root_logger.addHandler(console_handler)

    log_dir = Path(log_dir) if log_dir is not None else Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "harvest.log", maxBytes=5 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s")
    )
    root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("selenium").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Colored and filtered logging initialized.")
