#!/usr/bin/env python3
"""
Job worker for delayed federation jobs (follower reconciliation)

Runs JobRunner against the redis sorted set the web process schedules into. Several workers can share one queue,
each job is claimed by exactly one of them.

Usage:
    python worker.py [--name worker-1] [--processes 2] [--interval 5]
"""
import asyncio
import logging
import argparse
import sys
from multiprocessing import Process
from typing import List, Optional

from config import Config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def worker_process(worker_name: str, redis_url: str, interval: Optional[float]) -> None:
    """Run a single worker process"""
    from fedsync import create_app
    from fedsync.federation.scheduler import JobRunner, get_registered_jobs

    logger.info(f"Starting worker process: {worker_name}")
    app = create_app()
    logger.info(f"{worker_name} handles jobs: {', '.join(get_registered_jobs())}")
    runner = JobRunner(app, redis_url=redis_url, check_interval=interval)

    try:
        asyncio.run(runner.run_forever())
    except KeyboardInterrupt:
        logger.info(f"Worker {worker_name} interrupted")
    except Exception as e:
        logger.error(f"Worker {worker_name} failed: {e}", exc_info=True)


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Delayed federation job worker')
    parser.add_argument(
        '--name',
        default='worker',
        help='Base name for worker processes (default: worker)'
    )
    parser.add_argument(
        '--processes',
        type=int,
        default=1,
        help='Number of worker processes to spawn (default: 1)'
    )
    parser.add_argument(
        '--redis-url',
        default=None,
        help='Redis URL (default: from config)'
    )
    parser.add_argument(
        '--interval',
        type=float,
        default=None,
        help='Seconds between queue checks (default: JOB_CHECK_INTERVAL)'
    )

    args = parser.parse_args()

    redis_url = args.redis_url or Config.REDIS_URL
    if not redis_url:
        logger.error("Redis URL not configured")
        sys.exit(1)

    logger.info(f"Starting {args.processes} worker process(es)")
    logger.info(f"Redis URL: {redis_url}")

    if args.processes == 1:
        worker_process(args.name, redis_url, args.interval)
    else:
        processes: List[Process] = []

        try:
            for i in range(args.processes):
                worker_name = f"{args.name}-{i+1}"
                p = Process(
                    target=worker_process,
                    args=(worker_name, redis_url, args.interval),
                    name=worker_name
                )
                p.start()
                processes.append(p)
                logger.info(f"Started process {worker_name} (PID: {p.pid})")

            for p in processes:
                p.join()

        except KeyboardInterrupt:
            logger.info("Shutting down workers...")
            for p in processes:
                if p.is_alive():
                    p.terminate()

            for p in processes:
                p.join(timeout=5)
                if p.is_alive():
                    logger.warning(f"Force killing {p.name}")
                    p.kill()
                    p.join()

    logger.info("All workers stopped")


if __name__ == '__main__':
    main()
