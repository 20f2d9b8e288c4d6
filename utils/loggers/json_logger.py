"""
JSON logging for Markovianomatic.

Every record becomes one JSON object per line. Structured context travels through
``extra``: ``metrics`` (a dict of counters and timings), ``operation`` (the monitored
operation, e.g. "markov_save") and ``collection`` (the chain's collection name).
"""
from datetime import datetime
import os
import logging
import json
import sys

# Optional record attributes copied into the JSON object when present
CONTEXT_FIELDS = ("metrics", "operation", "collection")

LOG_FILE_PREFIX = "markovianomatic"


class JsonLogger(logging.Formatter):
    """Formatter that outputs JSON strings after parsing the log record."""

    def format(self, record):
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            str: JSON formatted log string
        """
        log_data = {
            'timestamp': datetime.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            # Live builds and saves log from worker threads
            'thread': record.threadName,
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': self.formatException(record.exc_info)
            }

        # Metrics may carry values json cannot encode (e.g. sets of starters)
        return json.dumps(log_data, default=str, ensure_ascii=False)


def get_project_root():
    """Absolute path of the repository root (two levels above utils/loggers)."""
    return os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', '..'))


def setup_log_file(log_file_path):
    """
    Creates the directory of a log file.

    Args:
        log_file_path (str): Path to the log file

    Returns:
        str: The path to log to, moved under /tmp when its directory cannot be created
    """
    log_dir = os.path.dirname(log_file_path)
    if not log_dir:
        return log_file_path

    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        print(f"Error creating log directory {log_dir}: {e}", file=sys.stderr)
        return os.path.join('/tmp', os.path.basename(log_file_path))
    return log_file_path


def determine_log_path(log_file=None):
    """
    Resolves the log file to write.

    Args:
        log_file (str, optional): Explicit path, or "auto" (or None) for
                                  logs/markovianomatic_<timestamp>.log under the project root

    Returns:
        str: Path to use for logging
    """
    if not log_file or log_file == "auto":
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(get_project_root(), 'logs', f"{LOG_FILE_PREFIX}_{timestamp}.log")
    return setup_log_file(log_file)


def get_logger(logger_name, log_file=None, clear_existing=True, console_json=True,
               console_level=logging.INFO):
    """
    Get a configured logger instance with JSON formatting.

    Console output goes to stderr so generated text on stdout stays clean.

    Args:
        logger_name (str): Name for the logger
        log_file (str, optional): Path to the log file, "auto" for a timestamped one
        clear_existing (bool): Whether to clear existing handlers
        console_json (bool): Whether to use JSON formatting for console output
        console_level (int): Minimum level printed on the console

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)

    if clear_existing:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
    elif logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    if console_json:
        console_handler.setFormatter(JsonLogger())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(determine_log_path(log_file), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLogger())
        logger.addHandler(file_handler)

    return logger


def log_json(logger, message, data=None, collection=None):
    """
    Log a message at INFO with optional metrics and collection context.

    Args:
        logger (logging.Logger): Logger instance
        message (str): Log message
        data (dict, optional): Metrics to include in the log
        collection (str, optional): Collection the message is about
    """
    extra = {}
    if data is not None:
        extra["metrics"] = data
    if collection:
        extra["collection"] = collection

    if extra:
        logger.info(message, extra=extra)
    else:
        logger.info(message)
