import logging
import sys
from typing import Optional, TYPE_CHECKING

from appstarter.config import effective_settings as config
from appstarter.log.handler import CommandLogStore

if TYPE_CHECKING:
    from appstarter.models import CommandConfig

# Loggers carrying raw process output are named 'proc.<command id>'.
PROCESS_LOGGER_PREFIX = "proc."


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from process output loggers
    and keeps them off the console.
    """
    def filter(self, record):
        return not record.name.startswith(PROCESS_LOGGER_PREFIX)


class MainFormatter(logging.Formatter):
    """A formatter for supervisor logs and raw process output lines."""

    def __init__(self) -> None:
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')

    def format(self, record):
        # Process output is printed as-is, prefixed with the command name.
        if record.name.startswith(PROCESS_LOGGER_PREFIX):
            name = getattr(record, "command_name", record.name[len(PROCESS_LOGGER_PREFIX):])
            return f"[{name}] {record.getMessage()}"
        return super().format(record)


def process_logger(command: "CommandConfig") -> logging.LoggerAdapter:
    """Returns the logger that receives a command's stdout/stderr lines."""
    return logging.LoggerAdapter(
        logging.getLogger(f"{PROCESS_LOGGER_PREFIX}{command.id}"),
        {"command_id": command.id, "command_name": command.name},
    )


def command_logger(logger: logging.Logger, command: "CommandConfig") -> logging.LoggerAdapter:
    """Wraps a module logger so every record is tagged with the command's id and name."""
    return logging.LoggerAdapter(logger, {"command_id": command.id, "command_name": command.name})


def setup_logging(
    console_level: int = logging.INFO,
    show_process_output: Optional[bool] = None,
    log_store: Optional[CommandLogStore] = None,
) -> CommandLogStore:
    """
    Configures the root logger for the application.
    This sets up the console handler and the in-memory command log store,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param show_process_output: Print command output on the console. Defaults to SHOW_PROCESS_OUTPUT.
    :param log_store: An existing store to attach instead of creating a new one.
    :return: The attached CommandLogStore.
    """
    if show_process_output is None:
        show_process_output = config.SHOW_PROCESS_OUTPUT

    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    if not show_process_output:
        console_handler.addFilter(SubprocessLogFilter())
    root_logger.addHandler(console_handler)

    # --- Command Log Store (keeps INFO and above for every command) ---
    store = log_store or CommandLogStore()
    store.setLevel(logging.INFO)
    root_logger.addHandler(store)
    return store
