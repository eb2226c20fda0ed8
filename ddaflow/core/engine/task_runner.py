import shutil
import sys
import threading
import time
from inspect import BoundArguments
from pathlib import Path
from typing import TYPE_CHECKING

import ddaflow
from ddaflow.core.base import enter_context
from ddaflow.core.engine.runner import (
    Runner,
    catch_to_failure,
    call_state_change_handlers,
    run_timeout_signal,
    run_timeout_thread,
    redirect_std_to_logger
)
from ddaflow.core.utility.cache import NO_CACHE
from ddaflow.core.utility.state import (
    State, Pending, Running, Retrying,
    Failure, Cached, Success, Skip, Drop
)
from ddaflow.utility.statutils import ResourceMonitor

if TYPE_CHECKING:
    from ddaflow.core.task import Task


class TaskRunner(Runner):
    """The task runner moves the state of one run forward:

        skip? -> cached? -> run (retry on failure) -> Success: write cache
                                                   -> Failure: Drop if the task is best-effort
    """

    def __init__(self, task: 'Task', inputs: BoundArguments, **kwargs):
        super().__init__(**kwargs)
        assert task.initialized
        self.task = task
        self.component = self.task
        self.inputs: BoundArguments = inputs

    def initialize_context(self, *args, **kwargs):
        update_context = {'taskrun_id': self.id}
        self.context.update(update_context)
        kwargs.get('context', {}).update(update_context)

    @enter_context
    @redirect_std_to_logger
    @call_state_change_handlers
    @catch_to_failure
    def start_run(self, state: State = None, **kwargs) -> State:
        state = self.initialize_run(state, **kwargs)
        state = self.set_state(state, Pending)
        state = self.set_state(state, Running)
        # 1. skip if needed
        state = self.check_skip(state)
        if isinstance(state, Skip):
            return state
        retry = self.task.config_dict.get("retry", 0)
        cache_type = self.context.get('cache_type', None)
        # 2. use cached result if it's still valid
        if cache_type:
            state = self.read_cache(state)
            if isinstance(state, Cached):
                return state
        while True:
            # 3. run the task in a fresh run_workdir
            self.prepare_workdir()
            state = self.run_task(state, **kwargs)
            if isinstance(state, Failure):
                if retry > 0:
                    ddaflow.context.logger.warning(f"Run of {self.task} failed, retry with {retry - 1} "
                                                   f"retries left.")
                    state = self.set_state(state, Retrying)
                    time.sleep(self.task.config_dict.get('retry_delay', 1))
                    state = self.set_state(state, Running)
                    retry -= 1
                    continue
                elif self.task.config_dict.get("drop_error", False):
                    state = self.set_state(state, Drop)
            break
        # 4. write to cache, only after success
        if isinstance(state, Success) and cache_type:
            state = self.write_cache(state)

        return state

    def prepare_workdir(self):
        """Remove whatever a previous (possibly killed) run left in run_workdir."""
        run_workdir = self.context.get('run_workdir')
        if run_workdir:
            if Path(run_workdir).is_dir():
                shutil.rmtree(run_workdir, ignore_errors=True)
            Path(run_workdir).mkdir(parents=True, exist_ok=True)

    @call_state_change_handlers
    def check_skip(self, state: State) -> State:
        if self.task.skip_fn and self.task.need_skip(self.inputs):
            state = Skip.copy(state)
            args = tuple(self.inputs.arguments.values())
            state.result = args[0] if len(args) == 1 else args
        return state

    @call_state_change_handlers
    def read_cache(self, state: State) -> State:
        """The cache itself checks the content hash of every File of the cached result, a changed file
        turns the entry into a miss.
        """
        res = ddaflow.context.cache.get(self.context['run_workdir'], NO_CACHE)
        if res is not NO_CACHE:
            self.task.restore(res)
            state = Cached.copy(state)
            state.result = res
        return state

    @call_state_change_handlers
    @catch_to_failure
    def run_task(self, state: State, **kwargs) -> State:
        with ResourceMonitor() as monitor:
            res = self.run_task_timeout(**kwargs)
        state = Success.copy(state)
        state.result = res
        run_info = {
            'resource_usage': monitor.usage
        }
        self.context.update(run_info)
        ddaflow.context.update(run_info)

        return state

    @call_state_change_handlers
    def write_cache(self, state):
        assert isinstance(state, Success)
        run_workdir = self.context['run_workdir']
        cache = ddaflow.context.cache
        cache.put(run_workdir, state.result)
        cache.persist_single(run_workdir)
        return state

    def run_task_timeout(self, **kwargs):
        """Call task.run, with timeout handled by SIGALRM in the main thread or by a thread pool otherwise."""
        run_args = self.inputs.args
        run_kwargs = self.inputs.kwargs

        timeout = self.task.config_dict.get("timeout")
        if timeout:
            if not sys.platform.startswith('win') and threading.current_thread() is threading.main_thread():
                return run_timeout_signal(timeout, self.task.run, *run_args, **run_kwargs)

            ddaflow.context.logger.debug("Run with timeout using ThreadPoolExecutor")

            @enter_context
            def run_in_context(task):
                return task.run(*run_args, **run_kwargs)

            return run_timeout_thread(timeout, run_in_context, self.task)

        return self.task.run(*run_args, **run_kwargs)
