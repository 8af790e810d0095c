"""Seed prices and per-ticker parameters for the offline feed simulator."""

# Realistic starting prices for the sample tickers shown without an API key
SEED_PRICES: dict[str, float] = {
    "AAPL": 190.00,
    "TSLA": 250.00,
    "GOOGL": 175.00,
    "MSFT": 420.00,
    "AMZN": 185.00,
    "NVDA": 800.00,
    "META": 500.00,
}

# sigma: annualized volatility, mu: annualized drift,
# volume: average shares traded per second during regular hours
TICKER_PARAMS: dict[str, dict[str, float]] = {
    "AAPL": {"sigma": 0.22, "mu": 0.05, "volume": 2500.0},
    "TSLA": {"sigma": 0.50, "mu": 0.03, "volume": 4000.0},
    "GOOGL": {"sigma": 0.25, "mu": 0.05, "volume": 1200.0},
    "MSFT": {"sigma": 0.20, "mu": 0.05, "volume": 1000.0},
    "AMZN": {"sigma": 0.28, "mu": 0.05, "volume": 1800.0},
    "NVDA": {"sigma": 0.40, "mu": 0.08, "volume": 1500.0},
    "META": {"sigma": 0.30, "mu": 0.05, "volume": 700.0},
}

# Tickers subscribed to but not listed above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.25, "mu": 0.05, "volume": 300.0}
DEFAULT_PRICE_RANGE = (50.0, 300.0)
