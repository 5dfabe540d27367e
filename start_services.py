#!/usr/bin/env python3
"""
BitPulse Services Startup Script
Starts the simulated price service and the web application.
"""
import os
import subprocess
import sys
import time
import logging

from price_client import PriceServiceClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PRICE_SERVICE_URL = os.environ.get('PRICE_SERVICE_URL', 'http://localhost:5001')


def start_process(script):
    logger.info(f"Starting {script}...")
    return subprocess.Popen([sys.executable, script])


def wait_for_price_service(max_attempts=10):
    """Poll the price service health endpoint until it answers."""
    client = PriceServiceClient(PRICE_SERVICE_URL, timeout=1)
    for attempt in range(max_attempts):
        if client.health_check():
            logger.info(f"Price service is ready (attempt {attempt + 1})")
            return True
        logger.debug(f"Waiting for price service... (attempt {attempt + 1}/{max_attempts})")
        time.sleep(1)
    return False


def stop_process(process):
    if process is None:
        return
    try:
        process.terminate()
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()


def main():
    price_process = None
    web_process = None

    try:
        price_process = start_process('price_service.py')
        if not wait_for_price_service():
            logger.error("Price service failed to start within timeout")
            return 1

        web_process = start_process('app.py')
        logger.info(f"BitPulse is running. Price service: {PRICE_SERVICE_URL}, web: http://localhost:5000")
        logger.info("Press Ctrl+C to stop all services")
        web_process.wait()
    except KeyboardInterrupt:
        logger.info("Shutting down services...")
    finally:
        stop_process(web_process)
        stop_process(price_process)
        logger.info("All services stopped")

    return 0


if __name__ == "__main__":
    sys.exit(main())
