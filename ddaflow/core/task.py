import asyncio
import inspect
from collections import abc
from copy import copy, deepcopy
from inspect import Parameter, BoundArguments
from pathlib import Path
from typing import Callable, Sequence, Optional, TYPE_CHECKING, List, Any

from dask.base import tokenize

import ddaflow
from ddaflow.core.base import Component, aenter_context
from ddaflow.core.channel import Channel, Consumer, Output, ConstantChannel
from ddaflow.core.engine.task_runner import TaskRunner
from ddaflow.core.models import TaskSpec, EdgeSpec, RunWarning
from ddaflow.core.record import is_record
from ddaflow.core.utility.cache import iter_files
from ddaflow.core.utility.state import State, Done, Success, Failure, Drop
from ddaflow.core.utility.target import File, END
from ddaflow.core.utils import class_deco
from ddaflow.utility.utils import change_cwd

if TYPE_CHECKING:
    from ddaflow.core.engine.scheduler import TaskScheduler


class RunDataTypeError(TypeError):
    pass


class RunDataFileNotFoundError(RuntimeError):
    pass


def code_signature(fn: Callable) -> tuple:
    """Byte code, literal constants and annotations of the function behind `fn`, stable across processes."""
    while hasattr(fn, '__source_func__'):
        fn = fn.__source_func__
    code = fn.__code__
    consts = tuple(c for c in code.co_consts if isinstance(c, (str, int, float, bytes, tuple)))
    annotations = {k: str(v) for k, v in getattr(fn, '__annotations__', {}).items()}
    return code.co_code, consts, annotations


class BaseTask(Component):
    """Base class of all Tasks, internally, BaseTask iteratively fetch items emitted by Channel inputs asynchronously.
    And then push the processed result of each item into the output channels. All items are handled in sequence.

    A task built with `when=predicate` is only part of the graph when `predicate(params)` is true, `params` being
    the pipeline parameters found in the context at build time. Otherwise its outputs are closed empty channels.
    """
    default_config = {
        'workdir': 'work',
    }

    def __init__(self, num_out: int = 1, when: Callable[[Any], bool] = None, **kwargs):
        super().__init__(**kwargs)
        self.num_out = num_out
        self.when = when

    @property
    def config_name(self) -> str:
        return "task_config"

    @property
    def is_operator(self) -> bool:
        return False

    def initialize_context(self):
        super().initialize_context()
        self.context.update({
            'task_id': self.config_dict['id'],
            'task_name': self.config_dict['name'],
            'task_full_name': self.config_dict['full_name'],
            'task_labels': self.config_dict['labels'],
        })

    def enabled(self) -> bool:
        if self.when is None:
            return True
        return bool(self.when(ddaflow.context.get('params', None)))

    def call_build(self, *args, **kwargs) -> Output:
        top_flow = ddaflow.context.top_flow
        if top_flow is None:
            raise RuntimeError(f"{self} must be called inside the `run` method of a Flow.")
        if not self.enabled():
            ddaflow.context.logger.debug(f"Skip building {self}, its `when` condition is false.")
            top_flow.skipped.append(self.config_dict['name'])
            return self.empty_output()

        with ddaflow.context(self.context):
            self.initialize_input(*args, **kwargs)
            self.initialize_output()
        # the top flow records every task for serializing, the up flow executes it
        top_flow.tasks.append(self)
        ddaflow.context.up_flow.components.append(self)

        return self.output

    def empty_output(self) -> Output:
        """Closed empty channels in place of the outputs of a task left out of the graph."""
        outputs = tuple(Channel.empty() for _ in range(self.num_out))
        return outputs[0] if self.num_out == 1 else outputs

    def initialize_input(self, *args, **kwargs):
        """Wrap all input channels into a consumer object for simultaneous data fetching."""
        super().initialize_input(*args, **kwargs)
        channels = list(args) + list(kwargs.values())
        self.input = Consumer.from_channels(*channels, task=self)
        if self.input.queues and all(isinstance(q.ch, ConstantChannel) for q in self.input.queues):
            ddaflow.context.logger.debug(f"All inputs of {self} are value channels, it runs once.")
        for input_q in self.input.queues:
            ddaflow.context.top_flow.edges.append(Edge(channel=input_q.ch, task=self))

    def initialize_output(self):
        self.output = tuple(Channel(task=self) for _ in range(self.num_out))
        if self.num_out == 1:
            self.output = self.output[0]

    @property
    def output_channels(self) -> Sequence[Channel]:
        return [self.output] if self.num_out == 1 else list(self.output)

    async def start_execute(self, **kwargs):
        await super().start_execute(**kwargs)
        try:
            await self.handle_consumer(self.input, **kwargs)
        finally:
            # always close the outputs, downstream materializing operators wait for it
            for ch in self.output_channels:
                await ch.put(END)

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        async for data in consumer:
            res = await self.handle_input(data)
            if res is END:
                break
        await self.handle_input(END)

    async def handle_input(self, data, *args, **kwargs):
        """Send the input data directly to the output channel."""
        if data is not END:
            await self.enqueue_res(data)

    async def enqueue_res(self, data, index=None):
        if self.num_out != 1:
            if index is not None:
                await self.output[index].put(data)
                return
            if not isinstance(data, abc.Sequence) or len(data) != self.num_out:
                raise RuntimeError(f"The output: {data} of {self} can't be split into {self.num_out} channels.")
            for ch, item in zip(self.output, data):
                await ch.put(item)
        else:
            await self.output.put(data)

    def __ror__(self, chs) -> Output:
        """
        ch | task               -> task(ch)
        [ch1, ch2, ch3] | task  -> task(ch1, ch2, ch3)
        """
        if not isinstance(chs, abc.Sequence):
            chs = [chs]
        assert all(isinstance(ch, Channel) for ch in chs)
        return self(*chs)

    def __rrshift__(self, chs):
        """
        ch >> task              -> task(ch)
        [ch1, ch2, ch3] >> task -> [task(ch1), task(ch2), task(ch3)]
        """
        if isinstance(chs, abc.Sequence):
            assert all(isinstance(ch, Channel) for ch in chs)
            output_chs = [self(ch) for ch in chs]
            return tuple(output_chs) if isinstance(chs, tuple) else output_chs
        assert isinstance(chs, Channel)
        return self(chs)

    def serialize(self) -> TaskSpec:
        config = self.config
        return TaskSpec(
            id=config.id,
            name=config.name,
            full_name=config.full_name,
            labels=list(config.labels),
            operator=self.is_operator,
            output=[ch.serialize() for ch in self.output_channels],
            resources=self.resources,
            docstring=type(self).__doc__ or "",
        )

    @property
    def resources(self) -> dict:
        return {}


class RunTask(BaseTask):
    """RunTask is subclass of BaseTask, representing tasks with run method exposed to users to implement specific
    item processing logics.
    Compared to BaseTask:
    1. Runs of multiple inputs will be executed in parallel, under the admission control of the scheduler.
    2. Runs will be executed in the main loop.
    """
    FUNC_PAIRS = [('run', '__call__', True)]
    RESOURCE_KEYS = ('fork', 'cpu', 'memory')
    default_config = {
        'cache_type': 'local',
        'executor_type': 'local',
        'timeout': 0,
        'retry': 0,
        'retry_delay': 1,
        'drop_error': False,
        # resources requested by each run
        'fork': 1,
        'cpu': 1,
        'memory': 0.5,
        # limits shared by all runs of this task
        'resources_limit': {},
    }

    def initialize_context(self):
        """Expose cache_type and executor_type into self.context
        """
        super().initialize_context()
        self.context.update({
            'cache_type': self.config_dict['cache_type'],
            'executor_type': self.config_dict['executor_type']
        })

    @property
    def resources(self) -> dict:
        return {k: self.config_dict[k] for k in self.RESOURCE_KEYS if k in self.config_dict}

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        """Submit one job per fetched input to the scheduler, then wait for all of them. The first failure cancels
        the remaining jobs.
        """
        scheduler: Optional['TaskScheduler'] = kwargs.pop("scheduler", None)

        futures = []
        try:
            async for data in consumer:
                run_data = (data,) if self.input.single else data
                run_data = self.create_run_data(run_data)
                job_coro = self.handle_run_data(run_data, **kwargs)
                if scheduler:
                    fut = scheduler.create_task(job_coro, data=self)
                else:
                    fut = asyncio.ensure_future(job_coro)
                futures.append(fut)
            if not futures:
                return []
            done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            # a sibling failed, runs not started yet never start
            for fut in futures:
                fut.cancel()
            raise
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.wait(pending)

        res_futures = list(done) + list(pending)
        self.check_future_exceptions(res_futures)

        return res_futures

    def create_run_data(self, data: tuple) -> BoundArguments:
        """Bind a fetched data tuple to self.run's signature."""
        len_args = len(self._input_args)
        args = data[:len_args]
        kwargs = {
            k: data[len_args + i] for i, k in enumerate(self._input_kwargs.keys())
        }

        run_sig = inspect.signature(self.run)
        try:
            run_data = run_sig.bind(*args, **kwargs)
        except TypeError as exc:
            raise ValueError(f"The input data: {data} can not be passed "
                             f"to {self.run} with signature of {run_sig}") from exc
        run_data.apply_defaults()
        return run_data

    @aenter_context
    async def handle_run_data(self, data: BoundArguments, **kwargs):
        """Executed in parallel, thus re-enter self.context."""
        data = await self.check_run_data(data, **kwargs)
        res = await self.call_run(data, **kwargs)
        await self.handle_res(res)

    async def check_run_data(self, data: BoundArguments, **kwargs) -> BoundArguments:
        """Convert input values to self.run's annotated types, make sure File inputs exist and have their
        content hash computed.
        """
        run_params = dict(inspect.signature(self.run).parameters)
        arguments = data.arguments
        for arg, param in run_params.items():
            if arg not in arguments:
                continue
            ano_type = param.annotation
            value = arguments[arg]
            if ano_type is not Parameter.empty and isinstance(ano_type, type):
                is_default = param.default is not Parameter.empty and value is param.default
                if not is_default and not isinstance(value, ano_type):
                    try:
                        # File/Folder paths are resolved in flow_workdir
                        with change_cwd(self.context.get('flow_workdir', '.')):
                            arguments[arg] = ano_type(value)
                    except Exception as e:
                        raise RunDataTypeError(f"The input argument `{arg}` has annotation `{ano_type}`, "
                                               f"but the input value `{value}` can not be converted.") from e
                if ano_type is File and not arguments[arg].is_file():
                    raise RunDataFileNotFoundError(f"The argument {arg} has a File annotation, "
                                                   f"but the file {value} does not exists.")
            # other runs may share the same objects, hash a private copy
            arguments[arg] = deepcopy(arguments[arg])
            for f in iter_files(arguments[arg]):
                if not f.initialized:
                    f.hash = await ddaflow.context.executor.run(f.calculate_hash)
        return data

    async def call_run(self, data: BoundArguments, **kwargs):
        clean_task = copy(self)
        return clean_task.run(*data.args, **data.kwargs)

    async def handle_res(self, res):
        await self.enqueue_res(res)

    def run(self, *args, **kwargs):
        """The method users need to implement for processing the data emitted by input channels."""
        raise NotImplementedError("Please implement this method.")


class Task(RunTask):
    """Task is subclass of RunTask:
    1. Each Task will have a unique task_key/task_workdir
    2. Each input's run will have a unique run_key/run_workdir, the run_key is the invocation signature.
    3. Task's run will be executed in executor and handled by a task runner.
    4. Within the task runner, the run passes through a state machine: skip, cache, run, retry, drop.
    """

    default_config = {
        'run_workdir': "",
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.skip_fn: Optional[Callable] = None

    @property
    def task_hash(self) -> str:
        """Hash of the source of self.run"""
        return tokenize(type(self).__name__, code_signature(self.run))

    @property
    def task_key(self) -> str:
        # the generated default name holds a random id, only a given name is part of the key
        name = self.rest_kwargs.get('name') or type(self).__name__
        return f"{name}-{self.task_hash}"

    def initialize_context(self):
        super().initialize_context()
        task_key = self.task_key
        self.config_dict.update({
            'task_key': task_key,
        })
        self.context.update({
            'task_key': task_key,
        })

    @property
    def task_workdir(self) -> Path:
        """Resolved bottom up:

        1: if the task's workdir/task_key is already absolute, then use it
        2: if up_flow_workdir/task_workdir is absolute, then use it
        3: otherwise use flow_workdir/up_flow_workdir/task_workdir
        """
        workdir = Path(self.context['task_config']['workdir'], self.context['task_key'])
        if workdir.is_absolute():
            return workdir
        workdir = Path(self.context.get('up_flow_config', {}).get('workdir', ''), workdir)
        if workdir.is_absolute():
            return workdir
        workdir = Path(self.context['flow_workdir'], workdir)
        assert workdir.is_absolute()
        return workdir

    @property
    def run_workdir(self) -> Path:
        return Path(self.task_workdir, self.context['run_key'])

    def hash_params(self) -> dict:
        """Resolved parameters that change what a run produces, part of the invocation signature."""
        return {}

    def run_hash_source(self, run_data: BoundArguments, **kwargs) -> dict:
        return {
            'task': self.task_key,
            'data': tuple(run_data.arguments.values()),
            'params': self.hash_params()
        }

    @property
    def run_lock_source(self) -> List[str]:
        return [self.context.get('run_workdir')]

    async def call_run(self, data: BoundArguments, **kwargs) -> State:
        """Run in the executor with a task runner, exclusively for the run_workdir."""
        cache_type = self.context.get('cache_type', None)
        if cache_type:
            run_key: str = ddaflow.context.cache.hash(**self.run_hash_source(data, **kwargs))
        else:
            run_key: str = ddaflow.context.random_id

        task = copy(self)
        task.context['run_key'] = run_key
        context_update = {
            'run_key': run_key,
            'run_workdir': str(task.run_workdir)
        }
        task.context.update(context_update)
        # safe to update, this asyncio task owns its copy of ddaflow.context
        ddaflow.context.update(context_update)
        async with ddaflow.context.lock(task.run_lock_source):
            task_runner = TaskRunner(task=task, inputs=data)
            executor = ddaflow.context.executor
            state = await executor.run(task_runner.run, **kwargs)
        return state

    async def handle_res(self, res: State):
        """Only results of Success states are emitted. A Drop state (best-effort task failed) emits nothing and
        is recorded as a warning.
        """
        assert isinstance(res, Done), f"The result is {res}, should be a state of instance of Done"
        ddaflow.context.record_taskrun(res)
        if isinstance(res, Success):
            # records passed along keep the warnings of upstream nodes
            for warning in self.record_warnings(res.result):
                if warning not in ddaflow.context.warnings:
                    ddaflow.context.warnings.append(warning)
            await self.enqueue_res(res.result)
        elif isinstance(res, Drop):
            ddaflow.context.record_warning('DropWarning', f"Best-effort run failed, nothing emitted: {res.message}",
                                           key=ddaflow.context.get('run_key', None))
        elif isinstance(res, Failure):
            raise res.result

    def record_warnings(self, result) -> List[RunWarning]:
        """Warnings carried by the `warnings` field of the emitted record(s)."""
        results = result if self.num_out != 1 and isinstance(result, tuple) else (result,)
        warnings = []
        for record in results:
            if is_record(record) and 'warnings' in record._fields:
                warnings.extend(w for w in record.warnings if isinstance(w, RunWarning))
        return warnings

    def restore(self, result):
        """Called with the result read from the cache, instead of running."""
        pass

    def need_skip(self, data: BoundArguments) -> bool:
        if self.skip_fn:
            return self.skip_fn(*data.args, **data.kwargs)
        return False

    def skip(self, skip_fn: Callable):
        """A decorator/function exposed for users to specify a skip predicate, skipped runs emit their inputs."""
        assert callable(skip_fn)
        self.skip_fn = skip_fn
        return skip_fn


class Edge(object):
    """A edge represents a dependency between a channel and a task. the Task consumes data emitted by the channel.
    """

    def __init__(self, channel: Channel, task: BaseTask):
        self.channel: Channel = channel
        self.task: BaseTask = task

    def serialize(self) -> EdgeSpec:
        return EdgeSpec(
            channel_id=self.channel.id,
            task_id=self.task.config_dict['id']
        )


run = class_deco(RunTask, 'run')
task = class_deco(Task, 'run')
