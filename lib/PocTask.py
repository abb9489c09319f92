"""
Proof Of Concept Task Module

This module ships a demonstration task: every cycle the queue
produces a random number of jobs, each job sleeps for a random
time while reporting its progress.

Responsibilities:
- Produce a random batch of sleep jobs
- Execute a sleep job with progress updates
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import time
import random

## import private pkgs
from Job import Job
from JobQueue import Queue

## payload sleep bounds in microseconds
MIN_SLEEP = 100000
MAX_SLEEP = 5000000
MAX_JOBS = 30

class PocQueue(Queue):
    """
    Queue of 0 to MAX_JOBS random sleep jobs.
    """

    def __init__(self, max_jobs: int = MAX_JOBS, min_sleep: int = MIN_SLEEP, max_sleep: int = MAX_SLEEP, rng: random.Random | None = None) -> None:
        self.max_jobs = max_jobs
        self.min_sleep = min_sleep
        self.max_sleep = max_sleep
        self.rng = rng or random.Random()

    def load(self) -> list[Job]:
        return [
            Job('pocjob-%d' % (i), {'sleepTime': self.rng.randint(self.min_sleep, self.max_sleep)})
            for i in range(self.rng.randint(0, self.max_jobs))
        ]

def sleep_job(job: Job, executor: object, steps: int = 10) -> None:
    """
    Sleep for job.payload['sleepTime'] microseconds.

    Args:
        job (Job): Job to run
        executor (Executor): Progress reporter
        steps (int): Progress updates while sleeping

    Returns:
        None
    """

    sleep = job.payload.get('sleepTime', 0) / 1000000.0
    for step in range(1, steps + 1):
        time.sleep(sleep / steps)
        executor.update(int(step * 100 / steps), '%s: slept %.2fs' % (job.id, sleep * step / steps))
