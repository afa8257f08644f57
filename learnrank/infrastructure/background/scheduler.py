# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Periodic dispatch of ranking recomputes to Dramatiq.

An APScheduler AsyncIOScheduler fires recurring jobs; each firing sends a
message to a Dramatiq actor and the work itself runs on the workers. The
default job sends ``recompute_institution_rankings`` every
``WORKER_RECOMPUTE_INTERVAL_MINUTES`` so persisted ranking tables are
refreshed about as often as they go stale.

Example:
    from learnrank.infrastructure.background.scheduler import start_scheduler

    scheduler = await start_scheduler()
    print(scheduler.get_stats())
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import dramatiq
import redis
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from learnrank.core.config import get_settings
from learnrank.utils.datetime import utc_now

logger = logging.getLogger(__name__)

RECOMPUTE_JOB_NAME = "Institution Ranking Recompute"
RECOMPUTE_ACTOR = "recompute_institution_rankings"

ActorLookup = Callable[[str], "dramatiq.Actor | None"]


def find_actor(actor_name: str) -> dramatiq.Actor | None:
    """Look up a LearnRank actor by name."""
    from learnrank.infrastructure.background import tasks

    actor = getattr(tasks, actor_name, None)
    return actor if isinstance(actor, dramatiq.Actor) else None


@dataclass
class RecurringJob:
    """A message sent to an actor at a fixed interval.

    Attributes:
        name: Human-readable job name.
        actor_name: Dramatiq actor receiving the message.
        interval: Time between two sends.
        kwargs: Message keyword arguments.
        last_sent: When the last message went out.
        sent_count: Messages sent.
        error_count: Sends that failed.
    """

    name: str
    actor_name: str
    interval: timedelta
    kwargs: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    last_sent: datetime | None = None
    sent_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "actor_name": self.actor_name,
            "interval_seconds": int(self.interval.total_seconds()),
            "last_sent": self.last_sent.isoformat() if self.last_sent else None,
            "sent_count": self.sent_count,
            "error_count": self.error_count,
        }


class DramatiqScheduler:
    """Sends recurring jobs to Dramatiq actors.

    Jobs can be added before or after start(); jobs added before are
    scheduled when the scheduler starts.
    """

    def __init__(self, actor_lookup: ActorLookup = find_actor) -> None:
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: dict[str, RecurringJob] = {}
        self._run_now: set[str] = set()
        self._actor_lookup = actor_lookup

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def add_job(
        self,
        name: str,
        actor_name: str,
        interval: timedelta,
        kwargs: dict[str, Any] | None = None,
        run_now: bool = False,
    ) -> RecurringJob:
        """Register a recurring job.

        Args:
            name: Job name.
            actor_name: Actor to send to.
            interval: Time between sends.
            kwargs: Message keyword arguments.
            run_now: Send once as soon as the scheduler runs.

        Returns:
            The registered job.

        Raises:
            ValueError: If the interval is not positive.
        """
        if interval <= timedelta(0):
            raise ValueError(f"Interval of job {name!r} must be positive, got {interval}")

        job = RecurringJob(name=name, actor_name=actor_name, interval=interval, kwargs=kwargs or {})
        self._jobs[job.id] = job
        if run_now:
            self._run_now.add(job.id)
        if self._scheduler is not None:
            self._schedule(job)

        logger.info("Added job %s: %s every %s", name, actor_name, interval)
        return job

    def _schedule(self, job: RecurringJob) -> None:
        options: dict[str, Any] = {}
        # An explicit next_run_time of None would add the job paused.
        if job.id in self._run_now:
            options["next_run_time"] = utc_now()
            self._run_now.discard(job.id)
        self._scheduler.add_job(
            self.send,
            trigger=IntervalTrigger(seconds=job.interval.total_seconds()),
            args=[job.id],
            id=job.id,
            name=job.name,
            **options,
        )

    async def send(self, job_id: str) -> bool:
        """Send one message for a job.

        Returns:
            True if the message was handed to the broker.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return False

        actor = self._actor_lookup(job.actor_name)
        if actor is None:
            job.error_count += 1
            logger.error("Job %s failed: actor %s not found", job.name, job.actor_name)
            return False

        try:
            actor.send(**job.kwargs)
        except (dramatiq.DramatiqError, redis.RedisError) as e:
            job.error_count += 1
            logger.error("Job %s failed: %s", job.name, e)
            return False

        job.last_sent = utc_now()
        job.sent_count += 1
        logger.debug("Job %s sent to %s", job.name, job.actor_name)
        return True

    def remove_job(self, job_id: str) -> bool:
        """Unregister a job; False if it was unknown."""
        if self._jobs.pop(job_id, None) is None:
            return False
        self._run_now.discard(job_id)
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                logger.debug("Job %s was not scheduled", job_id)
        return True

    def get_job(self, job_id: str) -> RecurringJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[RecurringJob]:
        return list(self._jobs.values())

    async def start(self) -> None:
        """Start firing registered jobs."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        for job in self._jobs.values():
            self._schedule(job)
        self._scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        """Stop firing jobs; registered jobs are kept."""
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "job_count": len(self._jobs),
            "total_sent": sum(job.sent_count for job in self._jobs.values()),
            "total_errors": sum(job.error_count for job in self._jobs.values()),
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }


_scheduler: DramatiqScheduler | None = None


def get_scheduler() -> DramatiqScheduler:
    """Get the process-wide scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = DramatiqScheduler()
    return _scheduler


async def start_scheduler() -> DramatiqScheduler:
    """Start the process-wide scheduler with the institution recompute job.

    Returns:
        Started scheduler instance.
    """
    scheduler = get_scheduler()
    if not any(job.actor_name == RECOMPUTE_ACTOR for job in scheduler.list_jobs()):
        scheduler.add_job(
            RECOMPUTE_JOB_NAME,
            RECOMPUTE_ACTOR,
            interval=timedelta(minutes=get_settings().worker.recompute_interval_minutes),
        )
    await scheduler.start()
    return scheduler


async def stop_scheduler() -> None:
    """Stop and discard the process-wide scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
