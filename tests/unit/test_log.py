"""Unit tests for logging setup."""
import logging

from docqa.log import configure_logging


def test_configure_logging_sets_levels():
    """Test that the root level follows the argument and noisy loggers are quieted."""
    configure_logging("DEBUG", json_output=False)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("sentence_transformers").level == logging.WARNING

    configure_logging("ERROR")

    assert logging.getLogger().level == logging.ERROR
    assert logging.getLogger("transformers").level == logging.ERROR
