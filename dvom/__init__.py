import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'


def configure_logging(verbose: bool = False, quiet: bool = False, debug: bool = False, log_dir: str = None):
    """
    Configure application logging.

    Console output goes to stderr and stays quiet unless verbose mode is on,
    so command output on stdout is never mixed with stage narration. A
    rotating file handler keeps the full history when the log directory is
    writable.

    Args:
        verbose: Narrate every pipeline stage on the console
        quiet: Only report errors on the console
        debug: Log at DEBUG level (console and file)
        log_dir: Directory for the rotating log file (default: Config.LOG_DIR)
    """
    from dvom.config import Config

    if debug:
        console_level = logging.DEBUG
    elif quiet:
        console_level = logging.ERROR
    elif verbose:
        console_level = logging.INFO
    else:
        console_level = logging.WARNING

    file_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter('%(message)s'))

    handlers = [console_handler]
    file_error = None

    # File handler
    log_dir = log_dir or Config.LOG_DIR
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dvom.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)
    except OSError as e:
        file_error = e

    root = logging.getLogger('dvom')
    root.setLevel(min(console_level, file_level))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.propagate = False

    if file_error:
        root.warning(f"Warning: file logging disabled ({file_error})")

    root.debug(f"Logging configured (console level: {logging.getLevelName(console_level)})")
