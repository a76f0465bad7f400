#!/usr/bin/env python3
"""
Start the Celery worker (with embedded beat) if none is running.
Run from the backend directory: python start_worker.py
"""

import logging
import os
import subprocess
import sys
import time

from journey_engine.celery_config import celery_app

logger = logging.getLogger(__name__)

BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))


def check_celery_worker():
    """Check if a Celery worker is running"""
    try:
        active_workers = celery_app.control.inspect().active()
        if active_workers:
            logger.info("Celery worker is running")
            return True
        logger.warning("No active Celery workers found")
        return False
    except Exception as e:
        logger.error(f"Failed to check Celery worker status: {e}")
        return False


def build_worker_command(concurrency: int = 1, beat: bool = True, loglevel: str = "info"):
    cmd = [
        "celery",
        "-A", "journey_engine.celery_worker.celery",
        "worker",
        f"--loglevel={loglevel}",
        f"--concurrency={concurrency}",
    ]
    if beat:
        cmd.append("--beat")
    return cmd


def start_celery_worker():
    """Start the Celery worker"""
    try:
        logger.info("Starting Celery worker...")
        cmd = build_worker_command()
        logger.info(f"Running command: {' '.join(cmd)}")
        process = subprocess.Popen(cmd, cwd=BACKEND_DIR)
        logger.info(f"Celery worker started with PID: {process.pid}")
        return process
    except Exception as e:
        logger.error(f"Failed to start Celery worker: {e}")
        return None


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    logger.info("=== CELERY WORKER CHECK ===")
    if check_celery_worker():
        logger.info("Worker is already running, no action needed")
        return

    process = start_celery_worker()
    if not process:
        logger.error("Failed to start worker")
        sys.exit(1)

    logger.info("Worker started successfully")
    logger.info("Press Ctrl+C to stop the worker")
    try:
        while True:
            time.sleep(1)
            if process.poll() is not None:
                logger.error("Worker process died unexpectedly")
                break
    except KeyboardInterrupt:
        logger.info("Stopping worker...")
        process.terminate()
        process.wait()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
