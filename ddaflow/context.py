"""
The global coroutine-safe context. While a flow runs, `ddaflow.context` holds the configs of the running
flow/task plus these keys:

```
flow_id, flow_name, flow_workdir
task_id, task_name, task_key
run_key, run_workdir
params            the PipelineConfig of a pipeline flow
```
"""
import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import List, Optional, Iterable, TYPE_CHECKING

from ddaflow.core.default_context import DEFAULT_CONTEXT
from ddaflow.core.models import RunWarning, TaskRunRecord
from ddaflow.core.utility.cache import Cache, get_cache
from ddaflow.core.utility.executor import Executor, get_executor
from ddaflow.core.utility.state import State
from ddaflow.utility.context import Context
from ddaflow.utility.logging import create_logger

if TYPE_CHECKING:
    from ddaflow.core.flow import Flow


class DdaflowContext(Context):
    """Besides the key/values, the context gives access to process wide utilities, chosen according to the
    current content of the context:
        executor: by `executor_type`
        cache: by `cache_type`
        lock: by the given keys, usually `run_workdir`
        logger: a child logger named by the calling module
        warnings: non-fatal problems met during the run
    """
    EXECUTOR_TABLE = '__executors'
    LOCK_TABLE = '__locks'
    CACHE_TABLE = '__caches'
    LOGGER_TABLE = '__loggers'
    WARNING_LIST = '__warnings'
    TASKRUN_LIST = '__taskruns'
    FLOW_STACK_LIST = '__flow_stack'

    @property
    def random_id(self) -> str:
        return str(uuid.uuid4())

    @property
    def flow_stack(self) -> List['Flow']:
        return self._info.setdefault(self.FLOW_STACK_LIST, [])

    @property
    def top_flow(self) -> Optional['Flow']:
        return self.flow_stack[0] if self.flow_stack else None

    @property
    def up_flow(self) -> Optional['Flow']:
        return self.flow_stack[-1] if self.flow_stack else None

    def reset_run_info(self):
        """Forget executors, locks, caches, warnings and task runs of a previous run."""
        for table in (self.EXECUTOR_TABLE, self.LOCK_TABLE, self.CACHE_TABLE, self.WARNING_LIST,
                      self.TASKRUN_LIST):
            self._info.pop(table, None)

    @asynccontextmanager
    async def start_executors(self, executor_types: Iterable[str]):
        """Start the configured executors whose type is in `executor_types`, `local` is always available."""
        executors = self._info.setdefault(self.EXECUTOR_TABLE, {})
        wanted = set(executor_types) | {'local'}
        for executor_config in self.get('executors', []):
            executor_config = dict(executor_config)
            executor_type = executor_config.pop('executor_type')
            if executor_type in wanted and executor_type not in executors:
                executors[executor_type] = get_executor(executor_type, **executor_config)
        started = []
        try:
            for executor in executors.values():
                self.logger.debug(f"Starting executor: {executor}")
                await executor.__aenter__()
                started.append(executor)
            yield executors
        finally:
            for executor in started:
                self.logger.debug(f"Stopping executor: {executor}")
                await executor.__aexit__(None, None, None)
            executors.clear()

    @property
    def executor(self) -> Executor:
        executors = self._info.get(self.EXECUTOR_TABLE)
        if not executors:
            raise RuntimeError("Executors are not started, use `async with context.start_executors(...)`.")
        executor_type = self.get('executor_type', 'local')
        if executor_type not in executors:
            self.logger.warning(f"The executor: {executor_type} is not started, fall back to local.")
            executor_type = 'local'
        return executors[executor_type]

    @asynccontextmanager
    async def lock(self, keys: List[str]):
        """Hold one asyncio.Lock per key, used for making writes to a run directory exclusive."""
        lock_table = self._info.setdefault(self.LOCK_TABLE, defaultdict(asyncio.Lock))
        locks = [lock_table[key] for key in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield locks
        finally:
            for lock in acquired:
                lock.release()

    @property
    def cache(self) -> Cache:
        cache_type = self.get('cache_type', None) or 'local'
        caches = self._info.setdefault(self.CACHE_TABLE, {})
        if cache_type not in caches:
            caches[cache_type] = get_cache(cache_type, **self.get('caches', {}).get(cache_type, {}))
        return caches[cache_type]

    @property
    def warnings(self) -> List[RunWarning]:
        return self._info.setdefault(self.WARNING_LIST, [])

    def record_warning(self, kind: str, message: str, **kwargs) -> RunWarning:
        warning = RunWarning(kind=kind, message=message, task=self.get('task_name', None), **kwargs)
        self.warnings.append(warning)
        self.logger.warning(f"[{kind}] {message}")
        return warning

    @property
    def taskruns(self) -> List[TaskRunRecord]:
        return self._info.setdefault(self.TASKRUN_LIST, [])

    def record_taskrun(self, state: State) -> TaskRunRecord:
        record = TaskRunRecord(
            task=self.get('task_name', ''),
            run_key=self.get('run_key', ''),
            state=state.state_type,
            message=state.message
        )
        self.taskruns.append(record)
        return record

    @property
    def logger(self) -> logging.Logger:
        """A child logger of the package logger named by the module of the caller."""
        callee_frame = inspect.currentframe().f_back
        logger_name = callee_frame.f_globals.get('__name__', 'ddaflow')
        loggers = self._info.setdefault(self.LOGGER_TABLE, {})
        if logger_name not in loggers:
            if logger_name.split('.')[0] == ddaflow_logger.name:
                loggers[logger_name] = logging.getLogger(logger_name)
            else:
                loggers[logger_name] = ddaflow_logger.getChild(logger_name)
        return loggers[logger_name]


def inject_context_attrs(factory):
    """Attach attributes listed in `context.logging.context_attrs` to every log record."""

    def inner(*args, **kwargs):
        record = factory(*args, **kwargs)
        try:
            attrs = context.get('logging', {}).get('context_attrs', [])
        except Exception:
            attrs = []
        for attr in attrs:
            if not hasattr(record, attr):
                value = context.get(attr, None)
                setattr(record, attr, '' if value is None else str(value))
        return record

    return inner


context = DdaflowContext()
context.set_default(DEFAULT_CONTEXT)

log_record_factory = inject_context_attrs(logging.getLogRecordFactory())
ddaflow_logger, buffer_handler, log_handler = create_logger("ddaflow", log_record_factory, context.logging)
