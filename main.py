#!/usr/bin/env python3
"""Run the webhook API and the dispatch worker together.

Each service is its own process so a crash in one is visible to the other's
supervisor loop; when any child dies, all are stopped.
"""

import os
import signal
import subprocess
import sys
import time
from typing import List, NamedTuple

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'main.log')

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STARTUP_PAUSE = 2
POLL_INTERVAL = 5
STOP_TIMEOUT = 5


class Service(NamedTuple):
    label: str
    script: str


children: List[subprocess.Popen] = []
shutdown_requested = False


def services() -> List[Service]:
    """Services enabled by the current settings, in start order."""
    enabled = [Service("webhook API", "api_server.py")]
    if settings.WORKER_ENABLED:
        enabled.append(Service("dispatch worker", "background_worker.py"))
    return enabled


def launch(service: Service) -> subprocess.Popen:
    logger.info(f"Starting {service.label} ({service.script})")
    child = subprocess.Popen(
        [sys.executable, service.script],
        cwd=BASE_DIR,
    )
    children.append(child)
    time.sleep(STARTUP_PAUSE)
    return child


def stop_all(exit_code: int = 0):
    """Terminate every child, killing those that ignore SIGTERM, then exit."""
    for child in children:
        if child.poll() is None:
            logger.info(f"Terminating PID {child.pid}")
            child.terminate()

    for child in children:
        try:
            child.wait(timeout=STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"PID {child.pid} did not stop, killing it")
            child.kill()
            child.wait()

    logger.info("All services stopped")
    sys.exit(exit_code)


def signal_handler(signum, frame):
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Second signal received, exiting immediately")
        sys.exit(1)
    shutdown_requested = True
    logger.info(f"Received signal {signum}, shutting down")
    stop_all()


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Reminder Assistant starting")
    try:
        running = [(service, launch(service)) for service in services()]
        logger.info(f"Webhook API on http://{settings.API_HOST}:{settings.API_PORT} (docs at /docs)")
        if not settings.WORKER_ENABLED:
            logger.info("Dispatch worker disabled by configuration")

        while not shutdown_requested:
            for service, child in running:
                if child.poll() is not None:
                    logger.error(f"{service.label} (PID {child.pid}) exited with code {child.returncode}")
                    stop_all(exit_code=1)
            time.sleep(POLL_INTERVAL)

    except OSError as e:
        logger.error(f"Could not start services: {e}")
        stop_all(exit_code=1)


if __name__ == "__main__":
    main()
