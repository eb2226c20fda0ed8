import asyncio
from pathlib import Path
from typing import Optional, Union

import ddaflow
from ddaflow.core.base import enter_context, root_cause
from ddaflow.core.engine.resource import ResourceManager
from ddaflow.core.engine.runner import (
    Runner, catch_to_failure, call_state_change_handlers, redirect_std_to_logger
)
from ddaflow.core.engine.scheduler import TaskScheduler
from ddaflow.core.flow import Flow
from ddaflow.core.models import RunReport
from ddaflow.core.utility.state import State, Pending, Running, Success, Failure


class FlowRunner(Runner):
    """Execute a built top flow and collect the end state of every task run plus the warnings met on the way
    into `self.report`.
    """

    def __init__(self, flow: Flow, **kwargs):
        super().__init__(**kwargs)
        assert isinstance(flow, Flow) and flow.initialized, "Only a built flow can be run, call `flow()` first."
        self.flow: Flow = flow
        self.component = self.flow
        self.report: Optional[RunReport] = None

    def initialize_context(self, *args, **kwargs):
        update_context = {'flowrun_id': self.id}
        self.context.update(update_context)
        kwargs.get('context', {}).update(update_context)

    def run(self, state: State = None, **kwargs) -> State:
        """Returns the final state, a failed run raises the exception that started the failure."""
        ddaflow.context.reset_run_info()
        final_state = super().run(state, **kwargs)
        self.report = self.create_report(final_state)
        if isinstance(final_state, Failure):
            raise root_cause(final_state.result)
        return final_state

    @enter_context
    @redirect_std_to_logger
    @call_state_change_handlers
    @catch_to_failure
    def start_run(self, state: State = None, **kwargs) -> State:
        state = self.initialize_run(state, **kwargs)
        state = self.set_state(state, Pending)
        state = self.set_state(state, Running)
        state = self.run_flow(state, **kwargs)

        return state

    @call_state_change_handlers
    @catch_to_failure
    def run_flow(self, state, **kwargs):
        res = asyncio.run(self.async_run_flow(**kwargs))
        state = Success.copy(state)
        state.result = res
        return state

    async def async_run_flow(self, **kwargs):
        async with TaskScheduler(task_manager=ResourceManager(self.flow)) as scheduler:
            return await self.flow.start(scheduler=scheduler, **kwargs)

    def create_report(self, state: State) -> RunReport:
        return RunReport(
            flow=self.flow.config_dict['name'],
            state=state.state_type,
            taskruns=list(ddaflow.context.taskruns),
            warnings=list(ddaflow.context.warnings),
        )

    def write_warnings(self, path: Union[str, Path]) -> Path:
        """One warning per line, an empty file when the run met none."""
        assert self.report is not None, "The flow has not been run."
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open('w') as f:
            for warning in self.report.warnings:
                f.write(f"{warning}\n")
        return path
