"""
Unit tests for log_config.
"""

import logging
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add scripts directory to path
SCRIPTS_DIR = Path(__file__).parent.parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

import log_config


class TestGetLogLevel:

    @pytest.mark.parametrize("env,expected", [
        ({"LOG_LEVEL": "debug"}, logging.DEBUG),
        ({"LOG_LEVEL": "WARN"}, logging.WARNING),
        ({"LOG_LEVEL": "bogus"}, logging.INFO),
        ({"DEBUG": "true"}, logging.DEBUG),
        ({}, logging.INFO),
    ])
    def test_levels(self, env, expected):
        with patch.dict(os.environ, env, clear=True):
            assert log_config.get_log_level() == expected


class TestQuietMode:

    def test_disable_and_enable(self):
        logger = log_config.get_logger("doh5.test")
        log_config.disable_logging()
        assert logging.root.manager.disable == logging.CRITICAL
        assert not logger.isEnabledFor(logging.CRITICAL)

        log_config.enable_logging()
        assert logging.root.manager.disable == logging.NOTSET
        assert logger.isEnabledFor(logging.WARNING)

    def test_noisy_libraries_clamped(self):
        log_config.setup_logging(level=logging.DEBUG, force=True)
        assert logging.getLogger("aiohttp").level == logging.WARNING
        log_config.setup_logging(level=logging.INFO, force=True)


class TestSetLogLevel:

    def test_changes_root_level(self):
        log_config.setup_logging(level=logging.INFO, force=True)
        log_config.set_log_level(log_config.DEBUG)
        assert logging.getLogger().level == logging.DEBUG
        assert log_config.get_logger("doh5.test").isEnabledFor(logging.DEBUG)
