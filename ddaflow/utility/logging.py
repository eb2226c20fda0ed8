"""
Logger factory and stdout/stderr redirection, modified from prefect.
"""
import logging
import sys
from logging.handlers import MemoryHandler
from typing import Callable, Tuple


class BufferHandler(MemoryHandler):
    """Format records before buffering them, so the flushed target receives `record.message` ready to use."""

    def emit(self, record: logging.LogRecord):
        record.message = self.format(record)
        super().emit(record)


class LogHandler(logging.Handler):
    """A handler forwarding records to a replaceable callable, used for shipping logs into run reports."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.handler: Callable = None

    def handle(self, record):
        if self.handler is not None:
            self.handler(record)


def create_logger(name: str, log_record_factory, logging_options) \
        -> Tuple[logging.Logger, MemoryHandler, LogHandler]:
    """Create the package logger writing to stderr with the user level, plus a buffered handler that always
    captures DEBUG records.
    """
    formatter = logging.Formatter(
        fmt=logging_options['fmt'],
        datefmt=logging_options['datefmt'],
        style=logging_options['style']
    )
    logging.setLogRecordFactory(log_record_factory)
    logger = logging.getLogger(name)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging_options['level'])
    stream_handler.setFormatter(formatter)

    custom_log_handler = LogHandler()
    buffer_handler = BufferHandler(
        target=custom_log_handler,
        capacity=logging_options['buffer_size'],
        flushLevel=logging.DEBUG
    )
    buffer_handler.setLevel(logging.DEBUG)
    buffer_handler.setFormatter(formatter)

    logger.addHandler(stream_handler)
    logger.addHandler(buffer_handler)
    logger.setLevel(logging.DEBUG)

    return logger, buffer_handler, custom_log_handler


class RedirectToLog:
    """File-like object sending written lines into a logger, blank lines are ignored."""

    def __init__(self, logger: logging.Logger, level: int) -> None:
        self.logger: logging.Logger = logger
        self.level: int = level

    def write(self, msg: str) -> None:
        if not isinstance(msg, str):
            raise TypeError(f"string argument expected, got {type(msg)}")
        if msg.strip():
            self.logger.log(self.level, msg.rstrip())

    def flush(self) -> None:
        for handler in self.logger.handlers:
            handler.flush()
