import sys
import logging

datefmt = "%m-%d %H:%M:%S"
FORMAT = '%(levelname)s:: %(asctime)s:: %(name)s.%(funcName)s - %(message)s'
formatter = logging.Formatter(FORMAT, datefmt=datefmt)

ConsoleOutputHandler = logging.StreamHandler(sys.stdout)
ConsoleOutputHandler.setFormatter(formatter)

logging.getLogger("numpy").setLevel(logging.WARNING)
logging.getLogger("matplotlib").setLevel(logging.WARNING)


def configure_root_logger(level=logging.INFO):
    """Attaches the console handler to the root logger, once."""
    root_logger = logging.getLogger()
    if ConsoleOutputHandler not in root_logger.handlers:
        root_logger.addHandler(ConsoleOutputHandler)
    root_logger.setLevel(level)
    return root_logger


def set_logging_level(verbose: bool):
    level = logging.DEBUG if verbose else logging.INFO

    # Ensure both the logger and the handler get updated
    root_logger = configure_root_logger(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
