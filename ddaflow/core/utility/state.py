"""
States of a task run or a flow run.

    FlowRun:
        Scheduled Pending Running Done
    TaskRun:
        Pending Running [Retrying Running] Done

    Done
        Success
            Cached
            Skip
        Failure
            Cancelled
        Drop
"""
from typing import Any, Optional


class State(object):

    def __init__(self, result: Any = None, message: str = None, **kwargs):
        self.state_type: str = type(self).__name__
        self.result: Optional[Any] = result
        self.message: str = message or ""

    def to_dict(self) -> dict:
        dic = dict(self.__dict__)
        try:
            dic['result'] = str(dic['result'])
        except Exception:
            dic['result'] = "ERROR: can not be converted to string."
        return dic

    @classmethod
    def from_dict(cls, state_dict: dict) -> "State":
        state_cls = globals().get(state_dict['state_type'])
        if not (isinstance(state_cls, type) and issubclass(state_cls, State)):
            raise ValueError(f"Unknown state type: {state_dict['state_type']}")
        return state_cls(**state_dict)

    def __repr__(self):
        message = f":{self.message}" if self.message else ""
        return f"<{self.state_type}>({message})"

    @classmethod
    def copy(cls, state: 'State') -> 'State':
        new = cls()
        if state is not None:
            new.__dict__.update(state.__dict__)
        new.state_type = cls.__name__
        return new


class Scheduled(State):
    pass


class Pending(State):
    pass


class Retrying(Pending):
    """Waiting for the retry delay after a failure."""


class Running(State):
    pass


class Done(State):
    """End state of a run, use one of the subclasses."""


class Success(Done):
    pass


class Cached(Success):
    """The result comes from the cache store, the tool was not invoked."""


class Skip(Success):
    """The inputs are passed through without invoking the tool."""


class Failure(Done):
    """An exception has been raised, `result` holds the exception."""

    def __init__(self, trace_back: str = None, **kwargs):
        super().__init__(**kwargs)
        self.trace_back = trace_back


class Cancelled(Failure):
    pass


class Drop(Done):
    """A best-effort task failed, nothing is emitted for this input."""
