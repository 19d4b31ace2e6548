#!/usr/bin/env python3
"""
HR Workflow Engine Entry Point

Starts the workflow system with SQLite persistence and runs the deadline
scans until interrupted.
"""

import signal
import sys
import threading

from hr_workflow.config import get_config
from hr_workflow.logging_config import setup_logging
from hr_workflow.system import WorkflowSystem


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, "hr_workflow", config.log_format, config.log_file)
    
    logger.info("Starting HR Workflow Engine")
    logger.info(f"Database: {config.database_path}")
    logger.info(f"Deadline scans every {config.deadline_scan_interval_seconds}s")
    
    try:
        system = WorkflowSystem(config=config)
    except Exception as e:
        logger.error(f"Error starting workflow engine: {e}")
        sys.exit(1)
    
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    
    system.start()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down HR Workflow Engine")
    finally:
        system.shutdown()
