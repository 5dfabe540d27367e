"""
Auto-close scheduler - background jobs for position expiry and price refresh.

Two daemon threads run inside the web process: one settles expired
positions, the other re-anchors simulated prices on live market data and
refreshes the current price of open positions.
"""
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, Optional

from models import current_utc

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


class _Job:
    """State of one periodic job."""

    def __init__(self, name: str, interval: int):
        self.name = name
        self.interval = interval
        self.thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.last_run = None
        self.next_run = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self.stop_event.is_set()


class AutoCloseScheduler:
    """Runs the auto-close and price-update passes on fixed intervals."""

    def __init__(self, app, position_manager, price_service=None, socketio=None,
                 auto_close_interval: Optional[int] = None, price_update_interval: Optional[int] = None,
                 start_delay: Optional[int] = None):
        """Initialize the scheduler.

        Args:
            app: Flask app whose context the jobs run in
            position_manager: PositionManager performing settlement
            price_service: HybridPriceService to refresh (optional)
            socketio: SocketIO instance for pass summaries (optional)
            auto_close_interval: Seconds between auto-close passes
            price_update_interval: Seconds between price refreshes
            start_delay: Seconds to wait before the first pass
        """
        self.app = app
        self.position_manager = position_manager
        self.price_service = price_service
        self.socketio = socketio
        self.start_delay = start_delay if start_delay is not None else app.config.get('SCHEDULER_START_DELAY', 0)

        self._lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._jobs = {
            'auto_close': _Job('auto_close', auto_close_interval or app.config.get('AUTO_CLOSE_INTERVAL', 60)),
            'price_update': _Job('price_update', price_update_interval or app.config.get('PRICE_UPDATE_INTERVAL', 1800)),
        }
        self.started_at = None
        self.reset_stats()

    def reset_stats(self):
        with self._lock:
            self.stats = {
                'auto_close_runs': 0,
                'positions_closed': 0,
                'total_profit': 0.0,
                'auto_close_errors': 0,
                'price_update_runs': 0,
                'price_update_errors': 0,
                'positions_repriced': 0,
            }
        logger.info("[AutoClose] Statistics reset")

    def _loop(self, job: _Job, target):
        if job.stop_event.wait(self.start_delay):
            return
        while not job.stop_event.is_set():
            try:
                target()
            except Exception as e:
                logger.error(f"[AutoClose] Error in {job.name} job: {e}", exc_info=True)
            job.next_run = current_utc() + timedelta(seconds=job.interval)
            if job.stop_event.wait(job.interval):
                break
        logger.info(f"[AutoClose] {job.name} job stopped")

    def _start(self, name: str, target, interval: Optional[int] = None) -> bool:
        job = self._jobs[name]
        with self._lock:
            if job.running:
                logger.info(f"[AutoClose] {name} job already running")
                return False
            if interval:
                job.interval = interval
            job.stop_event = threading.Event()
            job.next_run = current_utc() + timedelta(seconds=self.start_delay)
            job.thread = threading.Thread(target=self._loop, args=(job, target),
                                          name=f'bitpulse-{name}', daemon=True)
            job.thread.start()
            if self.started_at is None:
                self.started_at = current_utc()
        logger.info(f"[AutoClose] {name} job started (every {job.interval}s, first run in {self.start_delay}s)")
        return True

    def _stop(self, name: str, timeout: float = 5.0) -> bool:
        job = self._jobs[name]
        with self._lock:
            thread = job.thread
            if thread is None:
                return False
            job.stop_event.set()
            job.thread = None
            job.next_run = None
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info(f"[AutoClose] {name} job stop requested")
        return True

    def start_auto_close(self, interval: Optional[int] = None) -> bool:
        return self._start('auto_close', self.run_auto_close_once, interval)

    def start_price_update(self, interval: Optional[int] = None) -> bool:
        return self._start('price_update', self.run_price_update_once, interval)

    def start_all(self):
        self.start_auto_close()
        self.start_price_update()

    def stop_auto_close(self) -> bool:
        return self._stop('auto_close')

    def stop_price_update(self) -> bool:
        return self._stop('price_update')

    def stop_all(self):
        self.stop_auto_close()
        self.stop_price_update()
        with self._lock:
            self.started_at = None

    def run_auto_close_once(self):
        """Settle expired positions now. Returns the list of close results."""
        with self._pass_lock, self.app.app_context():
            job = self._jobs['auto_close']
            job.last_run = current_utc()
            try:
                results = self.position_manager.check_and_close_expired_positions()
            except Exception:
                with self._lock:
                    self.stats['auto_close_errors'] += 1
                raise

            errors = self.position_manager.last_pass.get('errors', 0)
            with self._lock:
                self.stats['auto_close_runs'] += 1
                self.stats['positions_closed'] += len(results)
                self.stats['total_profit'] = round(self.stats['total_profit'] + sum(r.profit for r in results), 2)
                self.stats['auto_close_errors'] += errors

            if results:
                logger.info(f"[AutoClose] Closed {len(results)} expired position(s)")
                if self.socketio:
                    self.socketio.emit('positions_auto_closed', {
                        'count': len(results),
                        'position_ids': [r.position_id for r in results],
                        'timestamp': job.last_run.isoformat(),
                    }, to='staff')
            return results

    def run_price_update_once(self) -> Dict[str, Any]:
        """Refresh reference prices and the current price of open positions."""
        with self.app.app_context():
            job = self._jobs['price_update']
            job.last_run = current_utc()
            refreshed = False
            try:
                if self.price_service is not None and hasattr(self.price_service, 'refresh_base_prices'):
                    refreshed = self.price_service.refresh_base_prices()
                repriced = self.position_manager.update_open_position_prices()
            except Exception:
                with self._lock:
                    self.stats['price_update_errors'] += 1
                raise

            with self._lock:
                self.stats['price_update_runs'] += 1
                self.stats['positions_repriced'] += repriced

            logger.info(f"[AutoClose] Price update done (reference refreshed: {refreshed}, positions repriced: {repriced})")
            return {'reference_refreshed': refreshed, 'positions_repriced': repriced}

    def is_running(self) -> bool:
        return any(job.running for job in self._jobs.values())

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self.stats)
        return {
            'running': self.is_running(),
            'started_at': _iso(self.started_at),
            'start_delay': self.start_delay,
            'jobs': {
                name: {
                    'running': job.running,
                    'interval': job.interval,
                    'last_run': _iso(job.last_run),
                    'next_run': _iso(job.next_run) if job.running else None,
                }
                for name, job in self._jobs.items()
            },
            'stats': stats,
        }
