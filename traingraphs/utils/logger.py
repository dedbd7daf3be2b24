"""Managing the logger, utilities

The command line configures logging once through :func:`setup_logging`;
library modules only ever call :func:`get_logger`.
"""

import logging
import logging.config
import os

import tqdm
import yaml

from traingraphs.utils.data_utils import recursive_update

LOG_LEVEL_ENV = "TG_LOG_LEVEL"
DEFAULT_LOG_CONFIG = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "log-config.yaml"
)


class GraphLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter used across the package.

    It reports the caller of the logging call as the source of the record.
    """

    def log(self, level: int, msg: str, *args: tuple, **kwargs: dict):
        r"""
        Logs a message with the specified log level.

        Arguments
        ---------
        level : int
            Logging level (e.g., logging.INFO, logging.WARNING).
        msg : str
            The message to log.
        *args : tuple
            Additional positional arguments passed to the logger.
        **kwargs : dict
            Additional keyword arguments passed to the logger.
        """
        kwargs.setdefault("stacklevel", 2)
        if self.isEnabledFor(level):
            msg, kwargs = self.process(msg, kwargs)
            self.logger.log(level, msg, *args, **kwargs)


def get_logger(name: str) -> GraphLoggerAdapter:
    """
    Retrieves a logger with the specified name, applying a log level from the
    environment variable `TG_LOG_LEVEL` if set, or defaults to `INFO` level.

    Arguments
    ---------
    name : str
        The name of the logger to retrieve.

    Returns
    -------
    GraphLoggerAdapter
        An instance of `GraphLoggerAdapter` wrapping the logger with the specified name.
    """
    logger = logging.getLogger(name)
    log_level = os.environ.get(LOG_LEVEL_ENV, None)
    if log_level is None:
        log_level = logging.INFO
        os.environ[LOG_LEVEL_ENV] = str(log_level)
    logging.basicConfig(level=int(log_level))
    return GraphLoggerAdapter(logger, {})


def setup_logging(
    config_path=DEFAULT_LOG_CONFIG,
    overrides={},
    default_level=logging.INFO,
):
    """Setup logging configuration.

    Arguments
    ---------
    config_path : str
        The path to a logging config file.
    overrides : dict
        A dictionary of the same structure as the config dict
        with any updated values that need to be applied.
    default_level : int
        The level to use if the config file is not found.
    """
    if os.path.exists(config_path):
        with open(config_path, "rt", encoding="utf-8") as f:
            config = yaml.safe_load(f)
        recursive_update(config, overrides)
        logging.config.dictConfig(config)
    else:
        logging.basicConfig(level=default_level)
    os.environ[LOG_LEVEL_ENV] = str(default_level)


class TqdmCompatibleStreamHandler(logging.StreamHandler):
    """TQDM compatible StreamHandler.

    Writes and prints should be passed through tqdm.tqdm.write
    so that the tqdm progressbar doesn't get messed up.
    """

    def emit(self, record):
        """TQDM compatible StreamHandler."""
        try:
            msg = self.format(record)
            stream = self.stream
            tqdm.tqdm.write(msg, end=self.terminator, file=stream)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)
