"""Centralized logging for auto-vm.

Library logging conventions:
- Attach NullHandler to the library root logger
- Never add other handlers on import; entry points call configure_logging()
- Support AUTO_VM_LOG_LEVEL env var for level control

CLI output format:
    WARNING [2026-02-25 10:02:54] auto_vm.reaper - message

Non-blocking logging:
    The login path runs inside an SSH ForceCommand whose stderr is the
    user's terminal.  Records go through a bounded QueueHandler drained by a
    daemon thread, so a stalled terminal never blocks provisioning.  When the
    queue is full, records are dropped.

File logging:
    The reaper runs from cron with no terminal at all.  configure_logging()
    accepts a log_file that receives every record (e.g.
    /var/log/auto_vm/vm_cleanup.log).
"""

import contextlib
import logging
import logging.handlers
import os
import queue
from pathlib import Path

import click

LIBRARY_LOGGER_NAME: str = "auto_vm"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor AUTO_VM_LOG_LEVEL env var (e.g. "DEBUG", "WARNING", "ERROR")
_env_level = os.environ.get("AUTO_VM_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo with level colouring.

    Runs on the QueueListener's daemon thread.  click.echo() strips ANSI
    codes when stderr is not a TTY.
    """

    _COLOURS = {
        logging.ERROR: "red",
        logging.CRITICAL: "red",
        logging.WARNING: "yellow",
        logging.INFO: "green",
    }

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            colour = self._COLOURS.get(record.levelno)
            click.echo(click.style(msg, fg=colour, dim=colour is None), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue, no pickle needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All auto_vm modules use this instead of logging.getLogger() directly
    for a consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure library logging for CLI entry points.

    Idempotent: handlers are only added once per target.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
        log_file: Optional file that receives every record in addition to stderr.
            Parent directories are created.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if log_file is not None:
        resolved = str(log_file.resolve())
        if not any(
            isinstance(h, logging.FileHandler) and h.baseFilename == resolved for h in lib_logger.handlers
        ):
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))
            lib_logger.addHandler(file_handler)

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
