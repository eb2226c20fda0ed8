import asyncio
from typing import Any, Sequence, Optional, Coroutine, Dict, List

import ddaflow


class Job(asyncio.Future):
    """A future resolved by the coroutine once the scheduler decides to run it. `data` is what the task
    manager looks at when selecting jobs, usually the task node requesting resources.
    """

    def __init__(self, coro: Coroutine, data: Any = None):
        super().__init__()
        self.coro = coro
        self.data = data
        self.task: Optional[asyncio.Task] = None

    def cancel(self, *args, **kwargs) -> bool:
        if self.task and not self.task.done():
            self.task.cancel(*args, **kwargs)
        elif self.task is None:
            # never started, the coroutine would otherwise never be awaited
            self.coro.close()
        return super().cancel(*args, **kwargs)

    def __hash__(self):
        return id(self)


class TaskManager(object):
    """Decide which pending jobs to start, and get informed when jobs start and end. Runs everything."""

    def select_jobs(self, jobs: Sequence[Job]) -> List[bool]:
        return [True] * len(jobs)

    def job_start(self, job: Job):
        pass

    def job_end(self, job: Job):
        pass


class Scheduler(object):
    """Scheduler object should support create_task method that returns a Future object.
    """

    def create_task(self, *args, **kwargs) -> asyncio.Future:
        raise NotImplementedError


class TaskSchedulerError(RuntimeError):
    pass


class TaskScheduler(Scheduler):
    """Async job scheduler. Every `wait_time` seconds the pending jobs, in submission order, are passed to the
    task manager which selects the ones allowed to start.
    """

    def __init__(self, wait_time: float = 0.05, task_manager: TaskManager = None):
        # dicts are ordered sets here, jobs are considered in submission order
        self.pending_jobs: Dict[Job, None] = {}
        self.running_jobs: Dict[Job, None] = {}
        self.num_done = 0
        self.error_jobs: List[Job] = []
        self.task_manager = task_manager or TaskManager()
        self.wait_time = wait_time
        self._running: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        """Only return once the scheduling loop is running."""
        self._running = asyncio.Event()
        self._loop_task = asyncio.ensure_future(self.start_loop())
        await self._running.wait()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            for job in list(self.pending_jobs):
                job.cancel()
        self._running.clear()
        try:
            await self._loop_task
        finally:
            self._running = None
            self._loop_task = None

    def create_task(self, coro: Coroutine, data=None) -> Job:
        job = Job(coro, data=data)
        self.pending_jobs[job] = None
        return job

    async def start_loop(self):
        assert self._running is not None, "Please use `async with scheduler` statement to start the scheduler"
        self._running.set()

        try:
            while True:
                await asyncio.sleep(self.wait_time)
                if not self._running.is_set() and len(self.running_jobs) + len(self.pending_jobs) == 0:
                    break
                # cancelled before being started
                for job in [job for job in self.pending_jobs if job.done()]:
                    del self.pending_jobs[job]
                jobs = list(self.pending_jobs)
                if not jobs:
                    continue
                selected = self.task_manager.select_jobs(jobs)
                for job, chosen in zip(jobs, selected):
                    if chosen:
                        self.run_job(job)
        except Exception as exc:
            raise TaskSchedulerError(str(exc)) from exc
        finally:
            self._running.clear()
            for job in list(self.pending_jobs) + list(self.running_jobs):
                job.cancel()

    def run_job(self, job: Job) -> Job:
        async def async_run_job():
            try:
                return await job.coro
            except Exception:
                self.error_jobs.append(job)
                raise

        del self.pending_jobs[job]
        self.running_jobs[job] = None
        # resources are taken before the next selection round
        self.task_manager.job_start(job)

        def run_job_done_callback(f: asyncio.Future):
            self.running_jobs.pop(job, None)
            self.num_done += 1
            self.task_manager.job_end(job)
            if job.done():
                return
            if f.cancelled():
                job.cancel()
            elif f.exception() is not None:
                job.set_exception(f.exception())
            else:
                job.set_result(f.result())

        ddaflow.context.logger.debug(f"Start job of {job.data}")
        job.task = asyncio.ensure_future(async_run_job())
        job.task.add_done_callback(run_job_done_callback)

        return job
