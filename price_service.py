"""
Price Service - Standalone simulated market feed for BitPulse instruments.

Run on its own (python price_service.py) to serve simulated quotes over
HTTP; the web app reads it through price_client.PriceServiceClient when
the Binance ticker is not reachable.
"""
from flask import Flask, jsonify, request
import numpy as np
import threading
import time
import json
import os
import logging

from price_client import BASE_PRICES, STABLECOINS, MAJOR_COINS, MIN_SIMULATED_PRICE, normalize_symbol

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def default_volatility(symbol, price):
    """Per-second volatility of the simulated walk for an instrument."""
    if symbol in STABLECOINS:
        return 0.00005
    if symbol in MAJOR_COINS:
        return 0.0005
    if price < 1:
        return 0.0025
    return 0.001


class PriceService:
    """Simulates instrument prices with a driftless geometric Brownian motion."""

    def __init__(self, config=None):
        self.config = {**self._get_default_config(), **(config or {})}
        self.instruments = {}
        self.running = False
        self.update_thread = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._rng = np.random.default_rng(self.config.get('SEED'))
        self._initialize_instruments()

    def _get_default_config(self):
        return {
            'BASE_PRICES': BASE_PRICES,
            'MAX_HISTORY_POINTS': 100,
            'PRICE_UPDATE_INTERVAL': 1,  # seconds
            'PRICE_DATA_FILE': os.environ.get('PRICE_DATA_FILE'),
            'SEED': None,
        }

    def _initialize_instruments(self):
        self._load_price_data()
        for symbol, price in self.config['BASE_PRICES'].items():
            if symbol not in self.instruments:
                self.instruments[symbol] = {
                    'price': float(price),
                    'volatility': default_volatility(symbol, price),
                    'history': [],
                    'last_update': None,
                }

    def _load_price_data(self):
        data_file = self.config.get('PRICE_DATA_FILE')
        if not data_file or not os.path.exists(data_file):
            return
        try:
            with open(data_file, 'r') as f:
                self.instruments = json.load(f)
            logger.info(f"Loaded {len(self.instruments)} instruments from {data_file}")
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error loading price data: {e}")
            self.instruments = {}

    def _save_price_data(self):
        data_file = self.config.get('PRICE_DATA_FILE')
        if not data_file:
            return
        with self._lock:
            snapshot = json.dumps(self.instruments)
        try:
            with open(data_file, 'w') as f:
                f.write(snapshot)
        except IOError as e:
            logger.error(f"Error saving price data: {e}")

    def start_price_updates(self):
        if not self.running:
            self.running = True
            self._stop_event.clear()
            self.update_thread = threading.Thread(target=self._price_update_loop, daemon=True)
            self.update_thread.start()
            logger.info("Price service started")

    def stop_price_updates(self):
        self.running = False
        self._stop_event.set()
        if self.update_thread:
            self.update_thread.join(timeout=2)
        self._save_price_data()
        logger.info("Price service stopped")

    def _price_update_loop(self):
        ticks = 0
        while not self._stop_event.is_set():
            try:
                self.update_prices()
                ticks += 1
                if ticks % 10 == 0:
                    self._save_price_data()
            except Exception as e:
                logger.error(f"Error in price update loop: {e}")
            self._stop_event.wait(self.config['PRICE_UPDATE_INTERVAL'])

    def update_prices(self, timestamp=None):
        """Advance every instrument by one step.

        S(t+dt) = S(t) * exp(-0.5*sigma^2*dt + sigma*sqrt(dt)*Z), Z ~ N(0,1),
        which keeps E[S(t+dt)] = S(t).
        """
        dt = float(self.config['PRICE_UPDATE_INTERVAL'])
        if timestamp is None:
            timestamp = int(time.time()) * 1000
        max_points = self.config.get('MAX_HISTORY_POINTS', 100)

        with self._lock:
            for symbol, data in self.instruments.items():
                if data.get('last_update') == timestamp:
                    continue
                sigma = data.get('volatility', 0.001)
                z = self._rng.standard_normal()
                log_return = -0.5 * sigma ** 2 * dt + sigma * np.sqrt(dt) * z
                data['price'] = max(float(data['price'] * np.exp(log_return)), MIN_SIMULATED_PRICE)
                data['last_update'] = timestamp

                data['history'].append({'time': timestamp, 'price': data['price']})
                if len(data['history']) > max_points:
                    data['history'] = data['history'][-max_points:]

    def get_current_prices(self):
        with self._lock:
            return {symbol: {'price': data['price'], 'last_update': data.get('last_update')}
                    for symbol, data in self.instruments.items()}

    def get_price_history(self, symbol=None, limit=None):
        with self._lock:
            if symbol:
                if symbol not in self.instruments:
                    return {}
                symbols = [symbol]
            else:
                symbols = list(self.instruments)
            result = {}
            for sym in symbols:
                history = list(self.instruments[sym]['history'])
                if limit:
                    history = history[-limit:]
                result[sym] = history
            return result

    def set_price(self, symbol, price):
        """Re-anchor an instrument, adding it when unknown."""
        symbol = normalize_symbol(symbol)
        with self._lock:
            data = self.instruments.setdefault(symbol, {
                'volatility': default_volatility(symbol, price),
                'history': [],
                'last_update': None,
            })
            data['price'] = float(price)


def create_price_api(price_service):
    """Create a Flask API for the price service."""
    app = Flask(__name__)

    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy', 'service': 'price_service',
                        'instruments': len(price_service.instruments)})

    @app.route('/prices')
    def get_prices():
        return jsonify(price_service.get_current_prices())

    @app.route('/prices/<symbol>')
    def get_price(symbol):
        symbol = normalize_symbol(symbol)
        prices = price_service.get_current_prices()
        if symbol in prices:
            return jsonify({symbol: prices[symbol]})
        return jsonify({'error': 'Instrument not found'}), 404

    @app.route('/history')
    def get_all_history():
        limit = request.args.get('limit', type=int)
        return jsonify(price_service.get_price_history(limit=limit))

    @app.route('/history/<symbol>')
    def get_symbol_history(symbol):
        limit = request.args.get('limit', type=int)
        history = price_service.get_price_history(normalize_symbol(symbol), limit)
        if history:
            return jsonify(history)
        return jsonify({'error': 'Instrument not found'}), 404

    return app


if __name__ == "__main__":
    service = PriceService()
    service.start_price_updates()

    api_app = create_price_api(service)
    port = int(os.environ.get('PRICE_SERVICE_PORT', 5001))

    try:
        logger.info(f"Starting Price Service API on http://localhost:{port}")
        api_app.run(host='0.0.0.0', port=port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        service.stop_price_updates()
