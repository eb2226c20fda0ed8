"""
Admission control of task runs. Every run requests `cpu`, `memory` and `fork` (one slot) from two pools: the
`resources_limit` of the top flow and the `resources_limit` of its own task, shared by all runs of the task.
A run only starts when both pools can afford it.
"""
import operator
from typing import Sequence, Callable, Any, TYPE_CHECKING, Dict, List

import ddaflow
from ddaflow.core.engine.scheduler import Job, TaskManager

if TYPE_CHECKING:
    from ddaflow.core.task import RunTask
    from ddaflow.core.flow import Flow


class Solver(object):
    """Multiple knapsack problem solver: pick the subset of pending jobs to start.
    """

    def solve(self, items: Sequence) -> List[bool]:
        raise NotImplementedError


class GreedySolver(Solver):
    """Walk the jobs in submission order and take every job that still fits. Earlier jobs are never starved by
    later smaller ones for long, since they are considered first at every round.
    """

    def __init__(self, fits: Callable[[Sequence[Job]], bool]):
        self.fits = fits

    def solve(self, items: Sequence[Job]) -> List[bool]:
        selected, chosen = [], []
        for item in items:
            ok = self.fits(chosen + [item])
            selected.append(ok)
            if ok:
                chosen.append(item)
        return selected


class ResourceManager(TaskManager):
    def __init__(self, flow: "Flow", solver: Solver = None):
        self.flow: "Flow" = flow
        self.solver = solver or GreedySolver(fits=self.fits)
        self.available: Dict[str, dict] = {}
        self.num_running = 0

    def pool(self, component) -> dict:
        """The remaining resources of a flow/task, initialized from its `resources_limit`."""
        key = component.config_dict['id']
        if key not in self.available:
            self.available[key] = dict(component.config_dict.get('resources_limit') or {})
        return self.available[key]

    @staticmethod
    def request(task: "RunTask") -> dict:
        return getattr(task, 'resources', {}) or {}

    def fits(self, jobs: Sequence[Job]) -> bool:
        pools = {}
        for job in jobs:
            task = job.data
            if task is None:
                continue
            for component in (self.flow, task):
                key = component.config_dict['id']
                pools.setdefault(key, dict(self.pool(component)))
                if not self.operate_resource(pools[key], self.request(task), is_valid=lambda x: x >= -1e-9):
                    return False
        return True

    def select_jobs(self, jobs: Sequence[Job]) -> List[bool]:
        selected = self.solver.solve(jobs)
        if not any(selected) and self.num_running == 0 and jobs:
            # a request larger than the whole limit would wait forever, run it alone
            ddaflow.context.logger.warning(f"The resources requested by {jobs[0].data} exceed the limit, "
                                           f"run it alone.")
            selected = [True] + [False] * (len(jobs) - 1)
        return selected

    def job_start(self, job: Job):
        self.num_running += 1
        task = job.data
        if task is not None:
            for component in (self.flow, task):
                self.operate_resource(self.pool(component), self.request(task))

    def job_end(self, job: Job):
        self.num_running -= 1
        task = job.data
        if task is not None:
            for component in (self.flow, task):
                self.operate_resource(self.pool(component), self.request(task), operator.add)

    @staticmethod
    def operate_resource(limit_dict: dict, cost_dict: dict,
                         binary_op: Callable[[Any, Any], Any] = operator.sub,
                         is_valid: Callable = None) -> bool:
        """Apply the cost to the limited resources only, others are unlimited."""
        for resource, limit in limit_dict.items():
            if resource in cost_dict:
                limit_dict[resource] = binary_op(limit, cost_dict[resource])
                if is_valid and not is_valid(limit_dict[resource]):
                    return False
        return True
