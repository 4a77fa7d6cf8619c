import os
import sys
import threading
import time

# Add the project root to sys.path to allow imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config import settings
from services.reconciliation import sync_all
from utils.logger import log_info, log_error


def run_sweep():
    """Runs one full reconciliation sweep and returns its summary."""
    log_info("Running scheduled subscription reconciliation...")
    return sync_all()


def _run_worker(interval: int):
    """Main loop for the sync worker."""
    while True:
        try:
            run_sweep()
        except Exception as e:
            log_error("Sync Worker encountered an error", str(e))

        time.sleep(interval)


def start_sync_worker():
    """
    Starts the sweep loop in a background thread.

    Disabled when SWEEP_INTERVAL_SECONDS is 0.
    """
    interval = settings.SWEEP_INTERVAL_SECONDS
    if interval <= 0:
        log_info("Sync Worker disabled (SWEEP_INTERVAL_SECONDS=0)")
        return None
    worker_thread = threading.Thread(target=_run_worker, args=(interval,), daemon=True)
    worker_thread.start()
    log_info(f"Sync Worker started in background. Sweeping every {interval}s.")
    return worker_thread


if __name__ == "__main__":
    # If run with --once, it just runs one sweep and exits (good for cron)
    if len(sys.argv) > 1 and sys.argv[1] == "--once":
        summary = run_sweep()
        sys.exit(1 if summary.failed else 0)
    else:
        _run_worker(settings.SWEEP_INTERVAL_SECONDS or 3600)
