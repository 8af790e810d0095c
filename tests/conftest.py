"""Pytest configuration and fixtures."""

import logging

import pytest


@pytest.fixture(autouse=True)
def _market_debug_logging(caplog):
    """Capture pulseboard.market debug logs so failures show the connection story."""
    caplog.set_level(logging.DEBUG, logger="pulseboard.market")
    yield
