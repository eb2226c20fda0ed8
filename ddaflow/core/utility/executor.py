"""
Executors running task runs. The dask executor is adapted from prefect.executors.dask
"""
import inspect
import logging
import uuid
from typing import Union, Callable, Optional, Any

import ddaflow
from ddaflow.utility.utils import import_object


class Executor(object):
    """An async executor runs submitted callables. Subclasses implement `run` and may set up/tear down resources
    in `__aenter__`/`__aexit__`.
    """

    def __init__(self, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def run(self, fn: Callable, *args, **kwargs):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"


class Local(Executor):
    """Run in the main loop of the current thread. Simple and debuggable, task runs are serialized.
    """

    async def run(self, fn: Callable, *args, **kwargs):
        res = fn(*args, **kwargs)
        if inspect.iscoroutine(res):
            return await res
        return res


class DaskExecutor(Executor):
    """Run task runs with `dask.distributed`. By default a temporary `distributed.LocalCluster` is created and torn
    down with the executor. Alternatively give the `address` of a running scheduler, or a `cluster_class`
    (like `dask_jobqueue.SLURMCluster`) with `cluster_kwargs`.

    Examples:

        executor = DaskExecutor()
        executor = DaskExecutor(cluster_class="dask_jobqueue.SLURMCluster", cluster_kwargs={"cores": 8})
        executor = DaskExecutor(address="192.0.2.255:8786")
    """

    def __init__(
            self,
            address: str = None,
            cluster_class: Union[str, Callable] = None,
            cluster_kwargs: dict = None,
            adapt_kwargs: dict = None,
            client_kwargs: dict = None,
            debug: bool = False,
            **kwargs
    ):
        super().__init__()
        if address is not None and (cluster_class is not None or cluster_kwargs is not None):
            raise ValueError("Cannot specify both `address` and `cluster_class`/`cluster_kwargs`")
        from distributed.deploy.local import LocalCluster
        if isinstance(cluster_class, str):
            cluster_class = import_object(cluster_class)
        elif not cluster_class:
            cluster_class = LocalCluster
        self.cluster_class = cluster_class

        self.cluster_kwargs = dict(cluster_kwargs or {})
        if cluster_class is LocalCluster:
            self.cluster_kwargs.setdefault('silence_logs', logging.CRITICAL if not debug else logging.WARNING)
        self.adapt_kwargs = dict(adapt_kwargs or {})
        self.client_kwargs = dict(client_kwargs or {})
        self.client_kwargs.setdefault('set_as_default', False)
        self.address = address
        self.client = None
        self.cluster = None

    def __repr__(self):
        return f"DaskExecutor(address={self.address}, cluster_class={self.cluster_class.__name__})"

    async def __aenter__(self):
        from distributed import Client
        if self.address is None:
            self.cluster = self.cluster_class(**self.cluster_kwargs, asynchronous=True)
            await self.cluster.__aenter__()
            if self.adapt_kwargs:
                self.cluster.adapt(**self.adapt_kwargs)
        else:
            self.cluster = self.address
        self.client = Client(self.cluster, **self.client_kwargs, asynchronous=True)
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.__aexit__(exc_type, exc_val, exc_tb)
        if not isinstance(self.cluster, str):
            await self.cluster.__aexit__(exc_type, exc_val, exc_tb)
        self.client = None
        self.cluster = None

    async def run(self, fn: Callable, *args: Any, key: Optional[str] = None, **kwargs: Any):
        if self.client is None:
            raise ValueError("This executor has not been started.")
        # runs are not pure: the same key must still rerun when the cache was invalidated
        fut = self.client.submit(fn, *args, key=self.make_key(key), pure=False, **kwargs)
        return await fut

    @staticmethod
    def make_key(name: Optional[str]) -> Optional[str]:
        if name:
            return f"{name}-{uuid.uuid4().hex}"
        return None

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state.update(client=None, cluster=None)
        return state


def get_executor(executor_type: str = 'local', **kwargs) -> Executor:
    executors = {
        'local': Local,
        'dask': DaskExecutor
    }
    if executor_type not in executors:
        raise ValueError(f"{executor_type} not supported, please choose one of {list(executors)}")
    ddaflow.context.logger.debug(f"Create executor: {executor_type}")
    return executors[executor_type](**kwargs)
