# Copyright 2025 Ant Group Co., Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Logging configuration for mpcflow.

When mpcflow is used as a library, logging is disabled by default
(NullHandler), so applications decide where compiler and evaluator logs go.

Example usage:
    >>> import mpcflow
    >>> mpcflow.setup_logging(level="DEBUG")
    >>> mpcflow.setup_logging(level="INFO", filename="mpcflow.log", stream=False)
"""

import logging
import sys
from typing import Any, Literal

# Root logger for all mpcflow components
MPCFLOW_LOGGER_NAME = "mpcflow"

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
    format: str | None = None,
    date_format: str | None = None,
    filename: str | None = None,
    stream: Any = None,
    force: bool = False,
    propagate: bool = False,
) -> None:
    """Configure the ``mpcflow`` logger.

    Args:
        level: Log level name. Default is INFO.
        format: Custom log format string. If None, uses the default format.
        date_format: Custom date format string. If None, uses the default.
        filename: If provided, also log to this file.
        stream: Stream to log to. Defaults to sys.stderr; False disables
            stream output.
        force: Remove existing handlers before adding new ones.
        propagate: Let records propagate to the application's root logger.
    """
    logger = logging.getLogger(MPCFLOW_LOGGER_NAME)

    log_level = getattr(logging, level.upper())
    logger.setLevel(log_level)

    # A lone NullHandler is only the library default; drop it when propagating.
    if propagate and not force:
        if len(logger.handlers) == 1 and isinstance(
            logger.handlers[0], logging.NullHandler
        ):
            force = True

    if force:
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)

    logger.propagate = propagate

    if propagate and not filename and stream is None:
        return

    formatter = logging.Formatter(
        format or DEFAULT_FORMAT, datefmt=date_format or DEFAULT_DATE_FORMAT
    )

    if stream is not False:
        if stream is None:
            stream = sys.stderr
        stream_handler = logging.StreamHandler(stream)
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if filename:
        file_handler = logging.FileHandler(filename)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def disable_logging() -> None:
    """Silence all mpcflow logging by installing only a NullHandler."""
    logger = logging.getLogger(MPCFLOW_LOGGER_NAME)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.addHandler(logging.NullHandler())
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger placed under the ``mpcflow`` hierarchy.

    Args:
        name: Module name, typically ``__name__``.
    """
    if name != MPCFLOW_LOGGER_NAME and not name.startswith(MPCFLOW_LOGGER_NAME + "."):
        name = f"{MPCFLOW_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


# Library mode: applications call setup_logging() to see output.
_root_logger = logging.getLogger(MPCFLOW_LOGGER_NAME)
if not _root_logger.handlers:
    _root_logger.addHandler(logging.NullHandler())
    _root_logger.propagate = False
