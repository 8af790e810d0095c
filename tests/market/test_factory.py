"""Tests for the environment-driven factories."""

import os
from unittest.mock import patch

from pulseboard.market.cache import CoalescingCache
from pulseboard.market.factory import create_cache, create_multiplexer, create_rest_gateway
from pulseboard.market.massive_client import MassiveRestGateway
from pulseboard.market.models import ConnectionState
from pulseboard.market.simulator import SIMULATOR_URL, SimulatorTransport
from pulseboard.market.websocket_transport import DELAYED_URL, REALTIME_URL, WebSocketTransport


class TestCreateMultiplexer:
    """Tests for create_multiplexer."""

    def test_simulator_when_no_api_key(self):
        """Test that the simulated feed is wired in when MASSIVE_API_KEY is not set."""
        with patch.dict(os.environ, {}, clear=True):
            mux = create_multiplexer()

        assert mux._url == SIMULATOR_URL
        assert mux._connector == SimulatorTransport.open

    def test_simulator_when_api_key_whitespace(self):
        with patch.dict(os.environ, {"MASSIVE_API_KEY": "   "}, clear=True):
            mux = create_multiplexer()

        assert mux._url == SIMULATOR_URL

    def test_delayed_feed_when_api_key_set(self):
        """Test that a key selects the delayed Massive feed by default."""
        with patch.dict(os.environ, {"MASSIVE_API_KEY": "test-key-123"}, clear=True):
            mux = create_multiplexer()

        assert mux._url == DELAYED_URL
        assert mux._api_key == "test-key-123"
        assert mux._connector == WebSocketTransport.open

    def test_realtime_feed(self):
        env = {"MASSIVE_API_KEY": "test-key", "MASSIVE_REALTIME": "true"}
        with patch.dict(os.environ, env, clear=True):
            mux = create_multiplexer()

        assert mux._url == REALTIME_URL

    def test_realtime_flag_off(self):
        env = {"MASSIVE_API_KEY": "test-key", "MASSIVE_REALTIME": "0"}
        with patch.dict(os.environ, env, clear=True):
            mux = create_multiplexer()

        assert mux._url == DELAYED_URL

    def test_returned_disconnected(self):
        with patch.dict(os.environ, {}, clear=True):
            mux = create_multiplexer()

        assert mux.state is ConnectionState.DISCONNECTED
        assert mux.symbols() == []

    def test_reconnect_settings_from_env(self):
        """Test that reconnect tuning is read from the environment."""
        env = {
            "MARKET_MAX_RECONNECT_ATTEMPTS": "8",
            "MARKET_RECONNECT_DELAY": "0.5",
            "MARKET_AUTH_TIMEOUT": "3",
        }
        with patch.dict(os.environ, env, clear=True):
            mux = create_multiplexer()

        assert mux._max_attempts == 8
        assert mux._base_delay == 0.5
        assert mux._auth_timeout == 3.0

    def test_invalid_setting_falls_back(self, caplog):
        with patch.dict(os.environ, {"MARKET_RECONNECT_DELAY": "soon"}, clear=True):
            mux = create_multiplexer()

        assert mux._base_delay == 1.0
        assert "MARKET_RECONNECT_DELAY" in caplog.text


class TestCreateCache:
    """Tests for create_cache."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cache = create_cache()

        assert isinstance(cache, CoalescingCache)
        assert cache.stats()["max_size"] == 500

    def test_max_size_from_env(self):
        with patch.dict(os.environ, {"CACHE_MAX_SIZE": "25"}, clear=True):
            cache = create_cache()

        assert cache.stats()["max_size"] == 25


class TestCreateRestGateway:
    """Tests for create_rest_gateway."""

    def test_disabled_without_api_key(self):
        with patch.dict(os.environ, {}, clear=True):
            assert create_rest_gateway(CoalescingCache()) is None

    def test_gateway_receives_api_key(self):
        """Test that the gateway is built with the key and the shared cache."""
        cache = CoalescingCache()
        with patch.dict(os.environ, {"MASSIVE_API_KEY": "test-key-123"}, clear=True):
            gateway = create_rest_gateway(cache)

        assert isinstance(gateway, MassiveRestGateway)
        assert gateway._api_key == "test-key-123"
        assert gateway._cache is cache
