"""
Delayed one-shot jobs on a redis sorted set.

The web process enqueues with JobQueue.schedule_once (sync redis, fire-and-forget). A worker runs JobRunner, an
asyncio loop that periodically claims due jobs and runs their registered handler inside an app context.

A job is claimed by removing it from the set, so two runners never execute the same job. Failed jobs are logged and
not retried. Handlers therefore have to tolerate running late, running twice when scheduled twice, and not running
at all.

Example:
    >>> @job("followers_sync_reconcile")
    ... def reconcile_followers(local_actor_id, remote_actor_uri, params):
    ...     ...
    >>> job_queue.schedule_once(60, "followers_sync_reconcile",
    ...                         {"local_actor_id": 1, "remote_actor_uri": "https://remote.example/users/a",
    ...                          "params": {"url": "https://remote.example/users/a/followers/sync"}})
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, List, Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = 'fedsync:scheduled_jobs'

# Global job registry
_job_registry: Dict[str, Callable] = {}


def job(name: str):
    """Register a function as the handler for jobs called `name`"""
    def decorator(func: Callable) -> Callable:
        _job_registry[name] = func
        return func
    return decorator


def get_job(name: str) -> Optional[Callable]:
    return _job_registry.get(name)


def get_registered_jobs() -> List[str]:
    return sorted(_job_registry)


@dataclass
class ScheduledJob:
    """A job waiting in the queue"""
    name: str
    payload: Dict[str, Any]
    run_at: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, data: str) -> 'ScheduledJob':
        return cls(**json.loads(data))


class JobQueue:
    """Producer side, used from request handling"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, key: str = DEFAULT_QUEUE_KEY):
        self.redis = redis_client
        self.key = key

    def init_app(self, app, redis_client: redis.Redis):
        self.redis = redis_client
        self.key = app.config.get('JOB_QUEUE_KEY', DEFAULT_QUEUE_KEY)

    def schedule_once(self, delay_seconds: float, job_name: str, payload: Dict[str, Any]) -> str:
        """Run `job_name` with `payload` as keyword arguments, no earlier than delay_seconds from now"""
        if self.redis is None:
            raise RuntimeError('JobQueue used before init_app')
        scheduled = ScheduledJob(name=job_name, payload=payload, run_at=time.time() + delay_seconds)
        self.redis.zadd(self.key, {scheduled.to_json(): scheduled.run_at})
        logger.info(f"Scheduled job {job_name} ({scheduled.id}) in {delay_seconds}s")
        return scheduled.id

    def pending(self) -> List[ScheduledJob]:
        return [ScheduledJob.from_json(member) for member in self.redis.zrange(self.key, 0, -1)]


class JobRunner:
    """Consumer side, runs in the worker process"""

    def __init__(self, app, redis_url: Optional[str] = None, key: Optional[str] = None,
                 check_interval: Optional[float] = None, batch_size: int = 50):
        self.app = app
        self.redis_url = redis_url or app.config['REDIS_URL']
        self.key = key or app.config.get('JOB_QUEUE_KEY', DEFAULT_QUEUE_KEY)
        self.check_interval = check_interval or app.config.get('JOB_CHECK_INTERVAL', 5)
        self.batch_size = batch_size
        self.redis: Optional[aioredis.Redis] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def connect(self):
        if not self.redis:
            self.redis = aioredis.from_url(self.redis_url, decode_responses=True)
            logger.info(f"Job runner connected to Redis at {self.redis_url}")

    async def start(self):
        await self.connect()
        self._running = True
        self._task = asyncio.create_task(self._runner_loop())
        logger.info("Job runner started")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.redis:
            await self.redis.aclose()
            self.redis = None
        logger.info("Job runner stopped")

    async def run_forever(self):
        await self.start()
        try:
            while self._running:
                await asyncio.sleep(self.check_interval)
        finally:
            await self.stop()

    async def _runner_loop(self):
        while self._running:
            try:
                await self.run_due_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in job runner loop: {e}", exc_info=True)
            await asyncio.sleep(self.check_interval)

    async def run_due_jobs(self, now: Optional[float] = None) -> int:
        """Claim and run every job that is due. Returns how many ran."""
        await self.connect()
        now = time.time() if now is None else now
        members = await self.redis.zrangebyscore(self.key, '-inf', now, start=0, num=self.batch_size)
        ran = 0
        for member in members:
            # Whoever removes it owns it
            if not await self.redis.zrem(self.key, member):
                continue
            try:
                scheduled = ScheduledJob.from_json(member)
            except (ValueError, TypeError) as e:
                logger.error(f"Dropping unreadable job {member!r}: {e}")
                continue
            if await self._execute_job(scheduled):
                ran += 1
        return ran

    async def _execute_job(self, scheduled: ScheduledJob) -> bool:
        handler = get_job(scheduled.name)
        if handler is None:
            logger.warning(f"No handler registered for job {scheduled.name} ({scheduled.id})")
            return False
        logger.info(f"Running job {scheduled.name} ({scheduled.id})")
        try:
            await asyncio.to_thread(self._run_in_app_context, handler, scheduled.payload)
            return True
        except Exception as e:
            logger.error(f"Job {scheduled.name} ({scheduled.id}) failed: {e}", exc_info=True)
            return False

    def _run_in_app_context(self, handler: Callable, payload: Dict[str, Any]):
        with self.app.app_context():
            from fedsync import db
            try:
                handler(**payload)
            finally:
                db.session.remove()
