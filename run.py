#!/usr/bin/env python3
"""Development runner: builds the runtime and runs the backup scheduler"""
import time
import logging

from minibackup import create_runtime
from minibackup.scheduler import init_scheduler, start_scheduler, stop_scheduler

if __name__ == '__main__':
    # Use development config for local testing
    runtime = create_runtime('development')

    init_scheduler(runtime)
    start_scheduler()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logging.getLogger('minibackup').info("Interrupted, shutting down")
    finally:
        stop_scheduler()
