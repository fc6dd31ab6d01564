#!/usr/bin/env python
from arq.worker import run_worker

from quotagate.config import get_settings
from worker.job_relay import WorkerSettings

if __name__ == "__main__":
    settings = get_settings()
    print("Starting ARQ relay worker...")
    print("Make sure Redis is running at:", settings.redis_url)
    print("Consuming queue:", settings.jobs_topic)
    print("Press Ctrl+C to stop the worker")

    # Run the worker - this handles event loop properly
    run_worker(WorkerSettings)
