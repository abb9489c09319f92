"""
Job Queue Module

This module defines the queue contract of a task. A queue
produces the ordered sequence of jobs a manager dispatches
during one run, and keeps the counters describing how far
that run has progressed.

Responsibilities:
- Define the load() contract implemented by every task queue
- Provide a fixed list queue for embedding code and tests
- Track loaded/queued/done/failed counters of one run
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
from typing import Iterable
from dataclasses import dataclass, asdict

## import private pkgs
from Job import Job

## counter fields, in reporting order
COUNTERS = ('loaded', 'queued', 'done', 'failed')

@dataclass
class QueueCounters(object):
    """
    Progress counters of one queue run.

    queued counts the jobs that are not terminal yet (pending
    plus running), so loaded == queued + done + failed holds
    after every transition.
    """

    loaded: int = 0
    queued: int = 0
    done: int = 0
    failed: int = 0

    def consistent(self) -> bool:
        return self.loaded == self.queued + self.done + self.failed

    def to_dict(self) -> dict:
        return asdict(self)

class Queue(object):
    """
    Base task queue.

    Subclasses override load() to fetch the jobs of one run. The
    base implementation is an empty queue, so a task without a
    queue of its own simply never dispatches anything.
    """

    def load(self) -> Iterable[Job]:
        """
        Load the jobs of the next run.

        Returns:
            Iterable[Job]: Ordered jobs, possibly empty
        """

        return []

class ListQueue(Queue):
    """
    Queue returning a fixed list of jobs on every load.
    """

    def __init__(self, jobs: Iterable[Job]) -> None:
        self.jobs = list(jobs)

    def load(self) -> list[Job]:
        ## hand out copies so a run never mutates the template jobs
        return [Job(job.id, dict(job.payload)) for job in self.jobs]
