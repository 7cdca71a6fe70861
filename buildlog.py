import logging
import sys


class BuildFormatter(logging.Formatter):
    default_format = "%(asctime)s [%(levelname)8s] %(message)s"
    debug_format = "%(asctime)s [%(levelname)8s] (%(filename)s.%(lineno)d, %(funcName)s) %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    def format(self, record) -> str:
        if record.levelno == logging.DEBUG:
            formatter = logging.Formatter(self.debug_format, self.date_format)
        else:
            formatter = logging.Formatter(self.default_format, self.date_format)
        return formatter.format(record)


class InfoFilter(logging.Filter):
    def filter(self, rec):
        return rec.levelno in (logging.DEBUG, logging.INFO)


class ErrorFilter(logging.Filter):
    def filter(self, rec):
        return rec.levelno not in (logging.DEBUG, logging.INFO)


def setup_logging(name: str = "minimal-api-build") -> logging.Logger:
    """Route INFO and below to stdout, WARNING and above to stderr."""
    app_logger = logging.getLogger(name)
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(BuildFormatter())
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(InfoFilter())

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(BuildFormatter())
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.addFilter(ErrorFilter())

    app_logger.addHandler(stdout_handler)
    app_logger.addHandler(stderr_handler)
    app_logger.setLevel(logging.INFO)
    return app_logger


LOG = setup_logging()
