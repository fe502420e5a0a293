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

"""Tests for mpcflow logging configuration."""

import io
import logging

import mpcflow as mf
from mpcflow.logging_config import MPCFLOW_LOGGER_NAME, get_logger


def test_default_null_handler():
    """Library mode installs a NullHandler and does not propagate."""
    logger = logging.getLogger(MPCFLOW_LOGGER_NAME)
    assert any(isinstance(h, logging.NullHandler) for h in logger.handlers)


def test_setup_logging_basic():
    """Records below the mpcflow logger reach the configured stream."""
    log_stream = io.StringIO()
    mf.setup_logging(level="INFO", stream=log_stream, force=True)
    try:
        logging.getLogger("mpcflow.test").info("Test message")
        output = log_stream.getvalue()
        assert "Test message" in output
        assert "INFO" in output
    finally:
        mf.disable_logging()


def test_setup_logging_levels():
    """The level filters lower severities."""
    log_stream = io.StringIO()
    mf.setup_logging(level="WARNING", stream=log_stream, force=True)
    try:
        logger = logging.getLogger("mpcflow.test")
        logger.info("Info message")
        logger.warning("Warning message")
        output = log_stream.getvalue()
        assert "Info message" not in output
        assert "Warning message" in output
    finally:
        mf.disable_logging()


def test_disable_logging():
    """disable_logging silences everything."""
    log_stream = io.StringIO()
    mf.setup_logging(level="DEBUG", stream=log_stream, force=True)
    mf.disable_logging()
    logging.getLogger("mpcflow.test").error("This should not appear")
    assert "This should not appear" not in log_stream.getvalue()


def test_custom_format():
    """A custom format string is honoured."""
    log_stream = io.StringIO()
    mf.setup_logging(
        level="INFO", format="<%(levelname)s> %(message)s", stream=log_stream, force=True
    )
    try:
        logging.getLogger("mpcflow.test").info("hello")
        assert "<INFO> hello" in log_stream.getvalue()
    finally:
        mf.disable_logging()


def test_get_logger_helper():
    """Names outside the hierarchy are placed under mpcflow."""
    assert get_logger("mpcflow.mpc").name == "mpcflow.mpc"
    assert get_logger("myapp").name == "mpcflow.myapp"


def test_compile_logs_summary():
    """Compilation reports node and triple counts at INFO."""
    log_stream = io.StringIO()
    mf.setup_logging(level="INFO", stream=log_stream, force=True)
    try:
        ctx = mf.Context()
        g = mf.create_millionaires_graph(ctx)
        config = mf.CompileConfig(2, mf.RandomnessConfig.with_dealer(2, seed=0))
        mf.compile_mpc(ctx, g, config)
        output = log_stream.getvalue()
        assert "Compiled graph 0 (millionaires) for 2 parties" in output
    finally:
        mf.disable_logging()
