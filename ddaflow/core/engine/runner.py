"""
Some codes are borrowed from https://github.com/PrefectHQ/prefect/blob/master/src/prefect/engine/runner.py
"""
import functools
import traceback
from typing import Callable, Optional, Set

import ddaflow
from ddaflow.core.base import Component
from ddaflow.core.utility.state import State, Failure, Scheduled, Cancelled


class RunException(RuntimeError):
    def __init__(self, *args, state: State = None):
        super().__init__(*args)
        self.state = state


def redirect_std_to_logger(method: Callable[..., State]) -> Callable[..., State]:
    """Send what the run prints into the logger, if `log_stdout`/`log_stderr` of the component is on."""

    @functools.wraps(method)
    def redirect(self: 'Runner', *args, **kwargs) -> State:
        import logging
        from contextlib import redirect_stdout, redirect_stderr, nullcontext
        from ddaflow.utility.logging import RedirectToLog

        rd_stdout_context = nullcontext()
        rd_stderr_context = nullcontext()
        cur_logger = ddaflow.context.logger
        config = ddaflow.context.get(self.component.config_name, {})
        if config.get('log_stdout', False):
            rd_stdout_context = redirect_stdout(RedirectToLog(cur_logger, level=logging.INFO))
        if config.get('log_stderr', False):
            rd_stderr_context = redirect_stderr(RedirectToLog(cur_logger, level=logging.ERROR))

        with rd_stdout_context, rd_stderr_context:
            return method(self, *args, **kwargs)

    return redirect


def call_state_change_handlers(method: Callable[..., State]) -> Callable[..., State]:
    """If the state returned by the wrapped method is a new one, call the state change handlers of the runner."""

    @functools.wraps(method)
    def check_and_run(self: "Runner", state: State = None, *args, **kwargs) -> State:
        new_state = method(self, state, *args, **kwargs)

        if new_state is not state:
            new_state = self.handle_state_change(state, new_state)

        return new_state

    return check_and_run


def catch_to_failure(method: Callable[..., State]) -> Callable[..., State]:
    """Exceptions raised by the wrapped method are captured into a Failure state, KeyboardInterrupt into a
    Cancelled one.
    """

    @functools.wraps(method)
    def catch_exception_to_failure(self: "Runner", *args, **kwargs) -> State:
        try:
            new_state = method(self, *args, **kwargs)
        except KeyboardInterrupt as exc:
            tb = traceback.format_exc()
            new_state = Cancelled(result=exc, message=f"{self} is cancelled.", trace_back=tb)
        except Exception as exc:
            tb = traceback.format_exc()
            new_state = Failure(result=exc, message=f"{type(exc).__name__}: {exc}", trace_back=tb)

        return new_state

    return catch_exception_to_failure


def run_timeout_signal(timeout: float, func: Callable, *args, **kwargs):
    """Run function in main thread in unix system with timeout using SIGALARM signal.

    References
    ----------
    https://github.com/pnpnpn/timeout-decorator/blob/master/timeout_decorator/timeout_decorator.py
    """
    import signal

    def error_handler(signum, frame):
        raise TimeoutError(f"Execution timed out after {timeout}s")

    old = signal.signal(signal.SIGALRM, error_handler)
    signal.setitimer(signal.ITIMER_REAL, timeout)
    try:
        ddaflow.context.logger.debug(f"Executing function in main thread with {timeout}s timeout...")
        return func(*args, **kwargs)
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, old)


def run_timeout_thread(timeout: float, func: Callable, *args, **kwargs):
    """Run function within a thread pool, the thread keeps running in background after the timeout."""
    from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

    executor = ThreadPoolExecutor(max_workers=1)
    fut = executor.submit(func, *args, **kwargs)
    try:
        return fut.result(timeout=timeout)
    except FutureTimeoutError:
        raise TimeoutError(f"Execution timed out after {timeout}s") from None
    finally:
        executor.shutdown(wait=False)


class Runner(object):
    """Base runner class, the state manager of runnable objects like flows and tasks.

    Methods of runners both accept and return a state and are decorated with `call_state_change_handlers`, so
    that every state change is seen by the registered handlers.
    """

    def __init__(self, id: str = None, name: str = None, labels: list = None, **kwargs):
        self.id = id or ddaflow.context.random_id
        self.name = name or self.id
        self.labels = labels or []
        self.component: Optional[Component] = None
        self.state_change_handlers: Set[Callable] = {self.logging_run_state}

    def __repr__(self):
        return f"{type(self).__name__}({self.component})"

    @property
    def context(self) -> dict:
        assert self.component is not None, 'component is not settled'
        return self.component.context

    @property
    def config(self) -> dict:
        assert self.component is not None, 'component is not settled'
        return self.component.config_dict

    @call_state_change_handlers
    def initialize_run(self, state: Optional[State], **kwargs) -> State:
        if state is None:
            state = Scheduled()
        return state

    def handle_state_change(self, prev_state, cur_state):
        handler = None
        try:
            for handler in self.state_change_handlers:
                cur_state = handler(self, prev_state, cur_state) or cur_state
        except Exception as exc:
            cur_state = Failure(result=exc, message=f"Unexpected error: {exc} when calling state_handler: {handler}",
                                trace_back=traceback.format_exc())
        return cur_state

    def run(self, state: State = None, **kwargs) -> State:
        kwargs.setdefault('context', {})
        self.initialize_context(state, **kwargs)
        return self.start_run(state=state, **kwargs)

    def initialize_context(self, *args, **kwargs):
        pass

    def start_run(self, state: State = None, **kwargs) -> State:
        raise NotImplementedError

    @call_state_change_handlers
    def set_state(self, old_state: State, state_type: type):
        assert issubclass(state_type, State)
        return state_type.copy(old_state)

    @staticmethod
    def logging_run_state(runner: "Runner", old_state, new_state):
        ddaflow.context.logger.debug(f"State change from [{old_state}] to [{new_state}]")
        if isinstance(new_state, Failure):
            ddaflow.context.logger.error(f"{runner} failed: {new_state.message}")
