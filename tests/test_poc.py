import random

from Job import Job
from PocTask import PocQueue, sleep_job, MAX_JOBS, MIN_SLEEP, MAX_SLEEP


class Recorder(object):

    def __init__(self):
        self.updates = []

    def update(self, percentage = None, message = None):
        self.updates.append((percentage, message))


def test_queue_produces_random_sleep_jobs():
    queue = PocQueue(rng = random.Random(7))
    for _ in range(20):
        jobs = queue.load()
        assert 0 <= len(jobs) <= MAX_JOBS
        assert [job.id for job in jobs] == ['pocjob-%d' % (i) for i in range(len(jobs))]
        assert all(MIN_SLEEP <= job.payload['sleepTime'] <= MAX_SLEEP for job in jobs)


def test_sleep_job_reports_progress():
    executor = Recorder()
    sleep_job(Job('pocjob-0', {'sleepTime': 10000}), executor, steps = 4)

    assert [percentage for percentage, _ in executor.updates] == [25, 50, 75, 100]
    assert executor.updates[-1][1].startswith('pocjob-0: slept')
