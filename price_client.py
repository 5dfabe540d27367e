"""
Price Client - Market price sources for the trading simulator.

Prices come from the Binance public ticker when it is reachable, then from
the standalone simulated price service, and finally from an in-process
simulator so that positions can always be valued and settled.
"""
import random
import re
import threading
import time
import requests
from typing import Dict, List, Optional, Any
import logging

logger = logging.getLogger(__name__)

# Reference prices (USD) used to seed the simulator
BASE_PRICES: Dict[str, float] = {
    'BTC': 104249.06,
    'ETH': 2497.81,
    'BNB': 646.21,
    'XRP': 2.18,
    'ADA': 0.61,
    'SOL': 147.54,
    'DOT': 3.72,
    'MATIC': 0.45,
    'LINK': 13.04,
    'DOGE': 0.167,
    'AVAX': 18.64,
    'UNI': 7.35,
    'LTC': 84.06,
    'BCH': 463.40,
    'ATOM': 4.04,
    'ALGO': 0.17,
    'VET': 0.022,
    'FIL': 2.39,
    'TRX': 0.275,
    'ETC': 16.47,
    'MANA': 0.257,
    'SAND': 0.257,
    'SUSHI': 0.622,
    'AAVE': 266.49,
    'COMP': 51.65,
    'MKR': 2038.00,
    'SNX': 0.588,
    'YFI': 5051.00,
    'USDC': 1.0,
    'USDT': 1.0,
    'BUSD': 1.0,
    'DAI': 1.0,
}

STABLECOINS = {'USDC', 'USDT', 'BUSD', 'DAI'}
MAJOR_COINS = {'BTC', 'ETH'}

# Display names used by the trading panel
INSTRUMENT_ALIASES = {
    'BITCOIN': 'BTC',
    'ETHEREUM': 'ETH',
    'SOLANA': 'SOL',
    'CARDANO': 'ADA',
    'POLKADOT': 'DOT',
    'CHAINLINK': 'LINK',
    'RIPPLE': 'XRP',
    'LITECOIN': 'LTC',
    'BITCOIN CASH': 'BCH',
    'AVALANCHE': 'AVAX',
    'POLYGON': 'MATIC',
    'DOGECOIN': 'DOGE',
}

DEFAULT_SIMULATED_PRICE = 100.0
MIN_SIMULATED_PRICE = 0.00000001


def _split_instrument(instrument: str):
    """Split an instrument name into (base symbol, quote or None)."""
    if not instrument:
        return '', None
    text = instrument.strip().upper()

    match = re.search(r'\(([A-Z0-9]+)(?:/([A-Z0-9]+))?\)', text)
    if match:
        text = match.group(1) + (f'/{match.group(2)}' if match.group(2) else '')
    elif text in INSTRUMENT_ALIASES:
        text = INSTRUMENT_ALIASES[text]

    quote = None
    if '/' in text:
        text, quote = text.split('/', 1)
        quote = quote.strip() or None
    text = re.sub(r'USDT$', '', text) if text not in STABLECOINS else text
    return text.strip(), quote


def normalize_symbol(instrument: str) -> str:
    """Reduce an instrument name to its base symbol.

    'BTC/USD' -> 'BTC', 'BTCUSDT' -> 'BTC', 'Bitcoin (BTC/USD)' -> 'BTC',
    'Ethereum' -> 'ETH'.
    """
    return _split_instrument(instrument)[0]


def instrument_key(instrument: str) -> str:
    """Key under which an instrument is priced.

    Crypto quoted in dollars collapses to its base symbol ('BTC/USD' and
    'BTCUSDT' -> 'BTC'); any other pair keeps both legs ('USD/JPY',
    'EUR/GBP').
    """
    base, quote = _split_instrument(instrument)
    if not quote or (quote in ('USD', 'USDT') and base in BASE_PRICES):
        return base
    return f'{base}/{quote}'


class BinanceClient:
    """Minimal client for the Binance public ticker endpoint."""

    def __init__(self, base_url: str = "https://api.binance.com", timeout: int = 5, quote: str = 'USDT'):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.quote = quote
        self._session = requests.Session()

    def get_ticker_price(self, symbol: str) -> Optional[float]:
        """Return the last traded price for SYMBOL/quote, or None if unavailable."""
        pair = f"{normalize_symbol(symbol)}{self.quote}"
        try:
            response = self._session.get(
                f"{self.base_url}/api/v3/ticker/price",
                params={'symbol': pair},
                timeout=self.timeout
            )
            response.raise_for_status()
            price = float(response.json()['price'])
        except requests.RequestException as e:
            logger.warning(f"Binance request failed for {pair}: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unexpected Binance response for {pair}: {e}")
            return None

        if price != price or price <= 0:
            return None
        return price

    def get_all_prices(self) -> Dict[str, float]:
        """Return {base symbol: price} for every pair quoted in the configured asset."""
        try:
            response = self._session.get(f"{self.base_url}/api/v3/ticker/price", timeout=self.timeout)
            response.raise_for_status()
            tickers = response.json()
        except requests.RequestException as e:
            logger.warning(f"Binance bulk ticker request failed: {e}")
            return {}
        except ValueError as e:
            logger.warning(f"Unexpected Binance bulk response: {e}")
            return {}

        prices = {}
        for ticker in tickers if isinstance(tickers, list) else []:
            pair = ticker.get('symbol', '')
            if not pair.endswith(self.quote):
                continue
            try:
                price = float(ticker.get('price'))
            except (TypeError, ValueError):
                continue
            if price > 0:
                prices[pair[:-len(self.quote)]] = price
        return prices


class PriceServiceClient:
    """Client for communicating with the price service API."""

    def __init__(self, base_url: str = "http://localhost:5001", timeout: int = 5):
        """Initialize the price service client.

        Args:
            base_url: Base URL of the price service API
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._session = requests.Session()

    def _make_request(self, endpoint: str, method: str = 'GET', **kwargs) -> Optional[Dict]:
        """Make a request to the price service.

        Returns:
            Response data as dictionary, or None if error
        """
        url = f"{self.base_url}{endpoint}"
        try:
            response = self._session.request(
                method=method,
                url=url,
                timeout=self.timeout,
                **kwargs
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error(f"Error communicating with price service: {e}")
            return None
        except (ValueError, KeyError) as e:
            logger.error(f"Error parsing price service response: {e}")
            return None

    def health_check(self) -> bool:
        """Check if the price service is healthy."""
        result = self._make_request('/health')
        return result is not None and result.get('status') == 'healthy'

    def get_current_prices(self) -> Dict[str, Dict[str, Any]]:
        """Get current prices for all instruments."""
        result = self._make_request('/prices')
        return result or {}

    def get_current_price(self, symbol: str) -> Optional[float]:
        """Get current price for a specific instrument, or None if not found."""
        symbol = normalize_symbol(symbol)
        result = self._make_request(f'/prices/{symbol}')
        if result and symbol in result:
            try:
                return float(result[symbol]['price'])
            except (KeyError, TypeError, ValueError):
                return None
        return None


class FallbackPriceService:
    """Simulated prices generated in-process when no remote source answers.

    Each instrument keeps its last price; a new price is drawn at most once
    per update interval as a bounded random variation of the previous one.
    """

    def __init__(self, base_prices: Optional[Dict[str, float]] = None, update_interval: float = 5.0):
        self.base_prices = dict(base_prices if base_prices is not None else BASE_PRICES)
        self.update_interval = update_interval
        self.assets: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def max_variation(self, key: str) -> float:
        """Largest relative move allowed per update for an instrument key."""
        if key in MAJOR_COINS:
            return 0.001
        if key in STABLECOINS:
            return 0.0001
        base = self.base_prices.get(key)
        if base is not None and base < 1:
            return 0.005
        return 0.002

    def get_price(self, instrument: str) -> float:
        """Return the simulated price for an instrument, advancing it if stale."""
        key = instrument_key(instrument)
        now = time.time()

        with self._lock:
            data = self.assets.get(key)
            if data is None:
                price = self.base_prices.get(key, DEFAULT_SIMULATED_PRICE)
                self.assets[key] = {'price': price, 'last_update': now}
                return round(price, 8)

            if now - data['last_update'] < self.update_interval:
                return round(data['price'], 8)

            variation = (random.random() - 0.5) * 2 * self.max_variation(key)
            data['price'] = max(data['price'] * (1 + variation), MIN_SIMULATED_PRICE)
            data['last_update'] = now
            return round(data['price'], 8)

    def set_base_price(self, instrument: str, price: float):
        """Re-anchor an instrument to a reference price."""
        key = instrument_key(instrument)
        with self._lock:
            self.base_prices[key] = price
            data = self.assets.get(key)
            if data is not None:
                data['price'] = price

    def get_symbols(self) -> List[str]:
        return sorted(set(self.base_prices) | set(self.assets))

    def get_current_prices(self) -> Dict[str, Dict[str, Any]]:
        """Get current prices for every known instrument."""
        return {key: {'price': self.get_price(key),
                      'last_update': int(self.assets[key]['last_update'] * 1000)}
                for key in self.get_symbols()}


class HybridPriceService:
    """Uses live prices when available, falls back to simulated ones."""

    def __init__(self, api_url: Optional[str] = "http://localhost:5001", use_binance: bool = True,
                 binance_url: str = "https://api.binance.com", timeout: int = 5,
                 base_prices: Optional[Dict[str, float]] = None):
        """Initialize hybrid service.

        Args:
            api_url: URL of the simulated price service API (None to disable)
            use_binance: Query the Binance ticker first
            binance_url: Base URL of the Binance REST API
            timeout: Request timeout in seconds for remote sources
            base_prices: Seed prices for the local simulator
        """
        self.binance = BinanceClient(binance_url, timeout=timeout) if use_binance else None
        self.client = PriceServiceClient(api_url, timeout=timeout) if api_url else None
        self.fallback = FallbackPriceService(base_prices)
        self._api_available = False
        self._last_health_check = 0
        self._health_check_interval = 30  # seconds
        self.last_source = None

    def _check_api_health(self) -> bool:
        """Check if the price service is available (with caching to avoid frequent checks)."""
        if self.client is None:
            return False
        current_time = time.time()
        if current_time - self._last_health_check > self._health_check_interval:
            self._api_available = self.client.health_check()
            self._last_health_check = current_time
        return self._api_available

    def get_price(self, instrument: str) -> float:
        """Current price of an instrument from the best available source."""
        # Remote sources quote in dollars only
        if '/' not in instrument_key(instrument):
            if self.binance is not None:
                price = self.binance.get_ticker_price(instrument)
                if price is not None:
                    self.last_source = 'binance'
                    return price

            if self._check_api_health():
                price = self.client.get_current_price(instrument)
                if price is not None:
                    self.last_source = 'price_service'
                    return price

        logger.warning(f"Using simulated price for {instrument}")
        self.last_source = 'simulated'
        return self.fallback.get_price(instrument)

    def get_prices(self, instruments) -> Dict[str, float]:
        """Price several instruments, each looked up once."""
        prices = {}
        for instrument in instruments:
            if instrument not in prices:
                prices[instrument] = self.get_price(instrument)
        return prices

    def get_current_prices(self) -> Dict[str, Dict[str, Any]]:
        """Get current prices, preferring the price service over the local simulator."""
        if self._check_api_health():
            prices = self.client.get_current_prices()
            if prices:
                return prices
        return self.fallback.get_current_prices()

    def refresh_base_prices(self) -> bool:
        """Re-anchor the simulator on live Binance prices.

        Returns:
            True if at least one reference price was updated
        """
        if self.binance is None:
            return False

        live_prices = self.binance.get_all_prices()
        updated = 0
        for symbol in list(self.fallback.base_prices.keys()):
            price = live_prices.get(symbol)
            if price:
                self.fallback.set_base_price(symbol, price)
                updated += 1

        if updated:
            logger.info(f"Refreshed {updated} reference prices from Binance")
        return updated > 0
