"""
Deadline Scheduler Module

Runs the deadline monitor's warning and overdue scans on two independent
daemon threads at a fixed rate. A scan that raises is logged and retried
on the next tick; it never stops its thread.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .deadlines import DeadlineMonitor

logger = logging.getLogger("hr_workflow.scheduler")


class DeadlineScheduler:
    """Periodic driver for DeadlineMonitor scans"""
    
    def __init__(self, monitor: DeadlineMonitor, interval_seconds: float = 3600,
                 join_timeout: float = 5.0):
        if interval_seconds <= 0:
            raise ValueError("Scan interval must be positive")
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.join_timeout = join_timeout
        self.running = False
        self.threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self.scan_counts: Dict[str, int] = {'warning': 0, 'overdue': 0, 'errors': 0}
    
    def _run_scan(self, name: str, scan: Callable[[], Dict[str, int]]) -> Optional[Dict[str, int]]:
        try:
            result = scan()
            with self._lock:
                self.scan_counts[name] += 1
            logger.debug(f"{name} scan finished: {result}")
            return result
        except Exception as e:
            with self._lock:
                self.scan_counts['errors'] += 1
            logger.error(f"{name} scan failed: {e}", exc_info=True)
            return None
    
    def _start_scan_thread(self, name: str, scan: Callable[[], Dict[str, int]]) -> None:
        def loop():
            # First scan runs immediately, then at a fixed rate
            while self.running:
                self._run_scan(name, scan)
                if self._stop_event.wait(self.interval_seconds):
                    break
        
        thread = threading.Thread(target=loop, name=f"deadline-{name}-scan")
        thread.daemon = True
        thread.start()
        self.threads.append(thread)
    
    def start(self) -> None:
        """Start both scan threads"""
        with self._lock:
            if self.running:
                return
            self.running = True
            self._stop_event.clear()
            self.threads = []
            self._start_scan_thread('warning', self.monitor.check_approaching_deadlines)
            self._start_scan_thread('overdue', self.monitor.check_overdue_items)
        logger.info(f"DeadlineScheduler started (every {self.interval_seconds}s)")
    
    def stop(self) -> None:
        """Stop the scan threads and wait for them to exit"""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()
            threads = list(self.threads)
        
        for thread in threads:
            thread.join(timeout=self.join_timeout)
        logger.info("DeadlineScheduler stopped")
    
    def is_running(self) -> bool:
        return self.running
    
    def run_once(self) -> Dict[str, Optional[Dict[str, int]]]:
        """Run both scans synchronously, for cron-style deployments and tests"""
        return {
            'warning': self._run_scan('warning', self.monitor.check_approaching_deadlines),
            'overdue': self._run_scan('overdue', self.monitor.check_overdue_items)
        }
