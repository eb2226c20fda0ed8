import functools
import inspect
import traceback
from copy import deepcopy
from enum import Enum
from pathlib import Path
from typing import Optional, Union, List, TYPE_CHECKING, Callable, Any, Mapping

from makefun import with_signature
from pydantic import BaseModel

import ddaflow
from ddaflow.core.channel import Consumer, Output
from ddaflow.utility.context import Context, merge_dicts

if TYPE_CHECKING:
    import asyncio


def enter_context(method: Callable[..., Any]) -> Any:
    """A decorator runs the wrapped method within a new context composed of self.context and kwargs' context.
    """

    @functools.wraps(method)
    def _enter_context(self, *args, **kwargs) -> Any:
        with ddaflow.context(self.context, kwargs.get('context', {})):
            return method(self, *args, **kwargs)

    return _enter_context


def aenter_context(method: Callable[..., Any]) -> Any:
    """The coroutine version of `enter_context`. Each asyncio task owns a copy of the ContextVar, so parallel runs
    of the same task never see each other's run_key/run_workdir.
    """

    @functools.wraps(method)
    async def _aenter_context(self, *args, **kwargs) -> Any:
        with ddaflow.context(self.context, kwargs.get('context', {})):
            return await method(self, *args, **kwargs)

    return _aenter_context


class ComponentExecuteError(RuntimeError):
    def __init__(self, *args, futures=None, trace_back=None):
        super().__init__(*args)
        self.futures = futures or []
        self.trace_back = trace_back


class ComponentCallError(RuntimeError):
    def __init__(self, *args, trace_back=None):
        super().__init__(*args)
        self.trace_back = trace_back


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap ComponentExecuteError/ComponentCallError chains down to the exception that started it."""
    while isinstance(exc, (ComponentExecuteError, ComponentCallError)) and exc.__cause__ is not None:
        exc = exc.__cause__
    return exc


class ComponentMeta(type):
    PAIR_ARG_NAME = 'FUNC_PAIRS'

    def __new__(mcs, class_name, bases, class_dict):
        class_name, bases, class_dict = mcs.copy_method_sig(class_name, bases, class_dict)
        class_name, bases, class_dict = mcs.update_default_config(class_name, bases, class_dict)

        return super().__new__(mcs, class_name, bases, class_dict)

    @classmethod
    def copy_method_sig(mcs, class_name, bases, class_dict):
        """Copy the signature of a method onto another one, so that `task.__call__` shows the parameters of
        `task.run`. Classes list the pairs in 'FUNC_PAIRS':

        FUNC_PAIRS:
            [src_method_name, target_method_name]
            [src_method_name, target_method_name, is_call_boolean]: an `int` parameter turns into `Channel[int]`
        """
        func_pairs = list(class_dict.get(mcs.PAIR_ARG_NAME, []))
        for base_cls in bases:
            func_pairs += getattr(base_cls, mcs.PAIR_ARG_NAME, [])

        def copy_sig(src_fn, tgt_fn, options):
            src = class_dict.get(src_fn) or next(getattr(c, src_fn) for c in bases if hasattr(c, src_fn))
            tgt = class_dict.get(tgt_fn) or next(getattr(c, tgt_fn) for c in bases if hasattr(c, tgt_fn))
            while hasattr(src, '__inner_func__'):
                src = src.__inner_func__
            while hasattr(tgt, '__inner_func__'):
                tgt = tgt.__inner_func__
            src_sigs = inspect.signature(src)
            tgt_sigs = inspect.signature(tgt)
            if options and options[0]:
                src_sig_params = list(src_sigs.parameters.values())
                for i, param in enumerate(src_sig_params):
                    if param.annotation is not inspect.Signature.empty:
                        src_sig_params[i] = param.replace(annotation=f"Channel[{param.annotation}]")
                src_sigs = inspect.Signature(src_sig_params, return_annotation=src_sigs.return_annotation)
            # keep the return annotation of the target
            if tgt_sigs.return_annotation is not inspect.Signature.empty:
                src_sigs = inspect.Signature(list(src_sigs.parameters.values()),
                                             return_annotation=tgt_sigs.return_annotation)

            @with_signature(src_sigs, func_name=tgt.__name__, qualname=tgt.__qualname__, doc=src.__doc__)
            def new_tgt_fn(*args, **kwargs):
                return tgt(*args, **kwargs)

            new_tgt_fn.__source_func__ = src
            new_tgt_fn.__inner_func__ = tgt
            return new_tgt_fn

        for src_fn, tgt_fn, *options in func_pairs:
            if src_fn == tgt_fn:
                raise ValueError(f"src {src_fn} and tgt {tgt_fn} can not be the same.")
            # only rewrite when the class itself defines one of the pair
            if src_fn in class_dict or tgt_fn in class_dict:
                class_dict[tgt_fn] = copy_sig(src_fn, tgt_fn, options)

        return class_name, bases, class_dict

    @classmethod
    def update_default_config(mcs, class_name, bases, class_dict):
        """Merge the class scoped `default_config` dict into the one inherited from the first base class."""
        config_name = "default_config"
        default_config: dict = deepcopy(getattr(bases[0], config_name, {})) if bases else {}
        class_dict[config_name] = merge_dicts(default_config, class_dict.get(config_name, {}))

        return class_name, bases, class_dict


class Component(object, metaclass=ComponentMeta):
    """Base class of Flow and Task
    """

    class State(Enum):
        CREATED = 1
        INITIALIZED = 2
        EXECUTED = 3

    CREATED = State.CREATED
    INITIALIZED = State.INITIALIZED
    EXECUTED = State.EXECUTED

    default_config = {
        'id': None,
        'name': None,
        'full_name': None,
        'labels': [],
        'workdir': '',
        'log_stdout': False,
        'log_stderr': False,
    }

    def __init__(self, **kwargs):
        self.rest_kwargs = kwargs
        self.state: Component.State = self.CREATED
        self.context: Optional[dict] = None

        self._input_args: Optional[tuple] = None
        self._input_kwargs: Optional[dict] = None
        self._input: Optional[Consumer] = None
        self._output: Optional[Output] = None

    @property
    def input(self) -> Optional[Consumer]:
        return self._input

    @input.setter
    def input(self, value: Consumer):
        self._input = value

    @property
    def output(self) -> Optional[Output]:
        return self._output

    @output.setter
    def output(self, value: Output):
        self._output = value

    @property
    def config_name(self) -> str:
        raise NotImplementedError

    @property
    def config_dict(self) -> dict:
        if self.context is None:
            return {}
        return self.context[self.config_name]

    @property
    def config(self) -> Context:
        """return a non-editable context"""
        return Context(self.config_dict)

    @property
    def initialized(self):
        return self.state != Component.State.CREATED

    def __str__(self):
        name = None
        if self.initialized:
            name = self.config_dict.get('name')
        return name or f"{type(self).__name__}[{id(self)}]"

    def __repr__(self):
        full_name = None
        if self.initialized:
            full_name = self.config_dict.get("full_name")
        return full_name or str(self)

    def get_full_name(self) -> str:
        """Generate a name like flow1.name|flow2.name|cur_task
        """
        up_flow_names = '|'.join(flow.config_dict['name'] for flow in ddaflow.context.flow_stack)
        if up_flow_names:
            up_flow_names += '|'
        return f"{up_flow_names}{self.config_dict['name']}"

    def __call__(self, *args, **kwargs) -> Union[Output, 'Component']:
        """This is where flows/tasks build the dependency graph. The called object is a template, a copy of it
        becomes the node of the graph.
        """
        try:
            from copy import copy
            new = copy(self)
            new.call_initialize(*args, **kwargs)
            return new.call_build(*args, **kwargs)
        except ComponentCallError:
            raise
        except Exception as e:
            tb = traceback.format_exc()
            raise ComponentCallError(f"Building {self} failed: {e}", trace_back=tb) from e

    def __copy__(self):
        cls = type(self)
        new = cls.__new__(cls)
        for k, v in self.__dict__.items():
            new.__dict__[k] = None if k.startswith('_') else deepcopy(v)
        return new

    def call_initialize(self, *args, **kwargs):
        self.state = self.INITIALIZED
        self.initialize_context()

    def call_build(self, *args, **kwargs) -> Union[Output, 'Component']:
        raise NotImplementedError

    def initialize_context(self):
        """Merge self.config_dict from four sources, later ones win: the class `default_config`, the
        `default_<config_name>` of the global context, the constructor kwargs and the `<config_name>` temporally
        set in the global context.
        """
        self.context = self.context or {}
        config_name = self.config_name
        up_workdir = ddaflow.context.get("up_" + config_name, {}).get('workdir', '')
        global_default_config = ddaflow.context.get(f'default_{config_name}', {})
        tmp_config = ddaflow.context.get(config_name, {})
        with ddaflow.context() as context:
            context.update({config_name: self.default_config})
            context.update({config_name: global_default_config})
            context.update({config_name: self.rest_kwargs})
            context.update({config_name: tmp_config})
            context_dict = context.to_dict()
        self.context = merge_dicts(self.context, context_dict)

        if not self.config_dict.get('id'):
            self.config_dict['id'] = ddaflow.context.random_id
        if not self.config_dict.get('name'):
            self.config_dict['name'] = f"{type(self).__name__}[{self.config_dict['id'][:8]}]"
        if not self.config_dict.get('full_name'):
            self.config_dict['full_name'] = self.get_full_name()

        # workdir is relative to the one of the up flow unless it's absolute
        workdir = Path(self.config_dict['workdir']).expanduser()
        if not workdir.is_absolute():
            workdir = Path(up_workdir, workdir)
        self.config_dict['workdir'] = str(workdir)

    def initialize_input(self, *args, **kwargs):
        self._input_args = args
        self._input_kwargs = kwargs

    @aenter_context
    async def start(self, **kwargs):
        """Start running the Flow/Task in the context of self.context, merged with kwargs.get('context', {})
        """
        back_context = deepcopy(self.context)
        self.context = merge_dicts(self.context, kwargs.get('context', {}))
        try:
            return await self.start_execute(**kwargs)
        except ComponentExecuteError:
            raise
        except Exception as e:
            tb = traceback.format_exc()
            raise ComponentExecuteError(str(e), trace_back=tb) from e
        finally:
            await self.end_execute()
            self.context = back_context

    async def start_execute(self, **kwargs):
        if self.state == self.CREATED:
            raise ValueError("The Task/Flow object is not initialized, please use task()/flow() to initialize it.")
        elif self.state == self.EXECUTED:
            raise ValueError("The Task/Flow has already been executed once before.")

        self.state = self.EXECUTED

    async def end_execute(self, *args, **kwargs):
        self.clean()

    def clean(self):
        pass

    def check_future_exceptions(self, futures: List['asyncio.Future']):
        first_exception = next(
            (fut.exception() for fut in futures if fut.done() and not fut.cancelled() and fut.exception()),
            None
        )
        if first_exception:
            raise ComponentExecuteError(str(first_exception), futures=futures) from first_exception

    def serialize(self) -> BaseModel:
        raise NotImplementedError

    def dict(self):
        return self.serialize().model_dump()

    @classmethod
    def input_signature(cls) -> Mapping[str, inspect.Parameter]:
        return inspect.signature(cls.__call__).parameters
