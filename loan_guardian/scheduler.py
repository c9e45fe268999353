"""
MongoDB-backed recurring job scheduler.

Jobs are documents in the jobs collection, one per rule. A poll loop claims
due jobs with an atomic find_one_and_update that stamps ``locked_at`` and
``lock_owner``, which is what keeps two executions of the same rule from
overlapping, across tasks and across processes. While a handler runs its
lock is renewed every third of the lock lifetime, so only a lock left by a
dead worker ages past the lifetime and can be claimed again.
"""
import asyncio
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from pymongo import ASCENDING, ReturnDocument

from .config import settings, JobNames
from .models import JobRunResult

logger = structlog.get_logger()

JobHandler = Callable[[str], Awaitable[JobRunResult]]


class JobScheduler:
    """Runs registered handlers for due jobs, bounded by a concurrency limit"""

    def __init__(
        self,
        collection,
        process_every: Optional[float] = None,
        lock_lifetime: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        backoff_enabled: Optional[bool] = None,
        backoff_max_seconds: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        self.collection = collection
        self.process_every = process_every or settings.SCHEDULER_PROCESS_EVERY_SECONDS
        self.lock_lifetime = lock_lifetime or settings.SCHEDULER_LOCK_LIFETIME_SECONDS
        self.max_concurrency = max_concurrency or settings.SCHEDULER_MAX_CONCURRENCY
        self.backoff_enabled = settings.RETRY_BACKOFF_ENABLED if backoff_enabled is None else backoff_enabled
        self.backoff_max_seconds = backoff_max_seconds or settings.RETRY_BACKOFF_MAX_SECONDS
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        self.is_running = False
        self._handlers: Dict[str, JobHandler] = {}
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._running: Set[asyncio.Task] = set()
        self._active_rules: Set[str] = set()
        self._loop_task: Optional[asyncio.Task] = None

    def define(self, name: str, handler: JobHandler):
        """Register the handler invoked for jobs with this name"""
        self._handlers[name] = handler

    async def schedule_recurring(
        self,
        rule_id: str,
        interval_seconds: Optional[int] = None,
        name: str = JobNames.LOAN_PROTECTION,
    ):
        """Create or update the rule's job; a new job is due immediately"""
        interval = interval_seconds or settings.LOAN_PROTECTION_INTERVAL_SECONDS
        now = datetime.utcnow()

        await self.collection.update_one(
            {"rule_id": rule_id},
            {
                "$set": {"name": name, "interval_seconds": interval},
                "$setOnInsert": {
                    "next_run_at": now,
                    "locked_at": None,
                    "lock_owner": None,
                    "failure_count": 0,
                    "created_at": now,
                },
            },
            upsert=True,
        )
        logger.info("Recurring job scheduled", rule_id=rule_id, job_name=name, interval_seconds=interval)

    async def remove_job(self, rule_id: str) -> bool:
        result = await self.collection.delete_many({"rule_id": rule_id})
        removed = result.deleted_count > 0
        logger.info("Scheduled job removed" if removed else "No scheduled job to remove", rule_id=rule_id)
        return removed

    async def start(self):
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self.is_running = True
        self._loop_task = asyncio.create_task(self._process_loop())
        logger.info("Scheduler started", worker_id=self.worker_id,
                    process_every=self.process_every, max_concurrency=self.max_concurrency)

    async def stop(self):
        """Stop polling and wait for executions already in flight"""
        if not self.is_running:
            return

        self.is_running = False
        if self._loop_task:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        if self._running:
            logger.info(f"Waiting for {len(self._running)} running jobs to finish")
            await asyncio.gather(*self._running, return_exceptions=True)

        logger.info("Scheduler stopped", worker_id=self.worker_id)

    async def _process_loop(self):
        while self.is_running:
            try:
                await self.run_due_jobs()
            except Exception as e:
                logger.error("Error in scheduler loop", error=str(e))

            await asyncio.sleep(self.process_every)

    async def run_due_jobs(self) -> int:
        """Claim every due job there is capacity for; returns how many were started"""
        started = 0

        while True:
            await self._semaphore.acquire()
            try:
                job = await self._claim_next()
            except BaseException:
                self._semaphore.release()
                raise

            if job is None:
                self._semaphore.release()
                break

            self._active_rules.add(job["rule_id"])
            task = asyncio.create_task(self._run_job(job))
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            started += 1

        if started:
            logger.debug(f"Started {started} due jobs")
        return started

    async def _claim_next(self) -> Optional[Dict[str, Any]]:
        if not self._handlers:
            return None

        now = datetime.utcnow()
        lock_expired_before = now - timedelta(seconds=self.lock_lifetime)

        return await self.collection.find_one_and_update(
            {
                "name": {"$in": list(self._handlers)},
                "rule_id": {"$nin": sorted(self._active_rules)},
                "next_run_at": {"$lte": now},
                "$or": [
                    {"locked_at": None},
                    {"locked_at": {"$lte": lock_expired_before}},
                ],
            },
            {"$set": {"locked_at": now, "lock_owner": self.worker_id, "last_run_at": now}},
            sort=[("next_run_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )

    async def _run_job(self, job: Dict[str, Any]):
        rule_id = job["rule_id"]
        renewal = asyncio.create_task(self._renew_lock(job))
        try:
            try:
                result = await self._handlers[job["name"]](rule_id)
                outcome, failed = result.outcome.value, result.failed
            except Exception as e:
                logger.error("Job handler raised", rule_id=rule_id, job_name=job["name"], error=str(e))
                outcome, failed = "handler_error", True
            finally:
                renewal.cancel()
                await asyncio.gather(renewal, return_exceptions=True)

            await self._finish(job, outcome, failed)
        except Exception as e:
            # Lock stays until it expires
            logger.error("Failed to release job", rule_id=rule_id, error=str(e))
        finally:
            self._active_rules.discard(rule_id)
            self._semaphore.release()

    async def _renew_lock(self, job: Dict[str, Any]):
        """Keep the claim fresh for as long as the handler runs"""
        while True:
            await asyncio.sleep(self.lock_lifetime / 3)
            try:
                await self.collection.update_one(
                    {"_id": job["_id"], "lock_owner": self.worker_id},
                    {"$set": {"locked_at": datetime.utcnow()}},
                )
            except Exception as e:
                logger.warning("Failed to renew job lock", rule_id=job["rule_id"], error=str(e))

    def next_delay(self, interval_seconds: int, failure_count: int) -> int:
        """Seconds until the next run; grows with consecutive failures when backoff is on"""
        if not self.backoff_enabled or failure_count <= 0:
            return interval_seconds

        ceiling = max(self.backoff_max_seconds, interval_seconds)
        return min(interval_seconds * 2 ** failure_count, ceiling)

    async def _finish(self, job: Dict[str, Any], outcome: str, failed: bool):
        now = datetime.utcnow()
        failure_count = job.get("failure_count", 0) + 1 if failed else 0
        delay = self.next_delay(job["interval_seconds"], failure_count)

        # Matches nothing if the job was removed during the run
        await self.collection.update_one(
            {"_id": job["_id"], "lock_owner": self.worker_id},
            {"$set": {
                "locked_at": None,
                "lock_owner": None,
                "last_finished_at": now,
                "last_outcome": outcome,
                "failure_count": failure_count,
                "next_run_at": now + timedelta(seconds=delay),
            }},
        )

    async def stats(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "is_running": self.is_running,
            "scheduled_jobs": await self.collection.count_documents({}),
            "locked_jobs": await self.collection.count_documents({"locked_at": {"$ne": None}}),
            "running_executions": len(self._running),
            "max_concurrency": self.max_concurrency,
        }
