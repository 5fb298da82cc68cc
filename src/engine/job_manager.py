# src/engine/job_manager.py
"""
JobManager: runs scan pipelines on background threads and tracks them by scan id.
"""

import logging
import threading
import time
from typing import Dict, List, Optional


class JobManager:
    def __init__(self):
        self.jobs: Dict[str, threading.Thread] = {}
        self.lock = threading.Lock()
        self.stopping = threading.Event()

    def launch(self, scan_id: str, func, *args, **kwargs) -> threading.Thread:
        thread = threading.Thread(
            target=self._run_job,
            args=(scan_id, func, args, kwargs),
            name=f"scan-{scan_id}",
            daemon=True,
        )
        with self.lock:
            self.jobs[scan_id] = thread
        thread.start()
        logging.info(f"[scan_id={scan_id}] Launched background scan pipeline.")
        return thread

    def _run_job(self, scan_id, func, args, kwargs):
        try:
            func(*args, **kwargs)
        except Exception as e:
            # nobody is waiting on this thread
            logging.exception(f"[scan_id={scan_id}] Background scan pipeline crashed: {e}")
        finally:
            with self.lock:
                if self.jobs.get(scan_id) is threading.current_thread():
                    del self.jobs[scan_id]

    def active_scan_ids(self) -> List[str]:
        with self.lock:
            return [scan_id for scan_id, thread in self.jobs.items() if thread.is_alive()]

    def join(self, scan_id: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for a pipeline to finish. Returns False if it is still running after timeout.
        """
        with self.lock:
            thread = self.jobs.get(scan_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def join_all(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.lock:
            threads = list(self.jobs.values())
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in threads)

    def start_periodic(self, name: str, func, interval: float) -> threading.Thread:
        """
        Call func every interval seconds on a daemon thread until stop() is called.
        """
        def loop():
            while not self.stopping.wait(interval):
                try:
                    func()
                except Exception as e:
                    logging.exception(f"Periodic task {name} failed: {e}")

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        logging.info(f"Started periodic task {name} every {interval}s")
        return thread

    def stop(self):
        self.stopping.set()
