import asyncio
import inspect
from collections import abc
from collections import deque
from typing import Union, Sequence, Optional, List, Any

import ddaflow
from ddaflow.core.models import ChannelSpec
from ddaflow.core.utility.target import END, End


class ChannelSubscribeError(RuntimeError):
    pass


class Fetcher(object):
    """Provide for/async for support to classes implementing get/get_nowait.
    Iteration stops when END is fetched.
    """

    def __aiter__(self):
        return self

    async def __anext__(self):
        value = await self.get()
        if isinstance(value, End):
            raise StopAsyncIteration
        return value

    def __iter__(self):
        return self

    def __next__(self):
        value = self.get_nowait()
        if isinstance(value, End):
            raise StopIteration
        return value

    async def get(self):
        return self.get_nowait()

    def get_nowait(self):
        raise NotImplementedError


class ConstantQueue(object):
    """A queue emitting its single value forever. The value needs to be put once before fetching."""
    NOTSET = object()

    def __init__(self):
        self.value = self.NOTSET
        self.has_value = asyncio.Event()

    def put_nowait(self, item):
        if not self.has_value.is_set():
            self.value = item
            self.has_value.set()

    async def put(self, item):
        self.put_nowait(item)

    def get_nowait(self):
        if self.value is self.NOTSET:
            raise RuntimeError("The ConstantQueue has no value yet, use put/put_nowait to set it.")
        return self.value

    async def get(self):
        await self.has_value.wait()
        return self.get_nowait()

    def empty(self):
        return self.value is self.NOTSET


class LazyAsyncQueue(Fetcher):
    """The subscription of one consumer to a channel. The inner queue is only created when first used, so it's
    always bound to the running event loop.
    """

    def __init__(self, ch: 'Channel', queue_factory):
        self.ch: Channel = ch
        self.queue_factory = queue_factory
        self.queue: Optional[Union[asyncio.Queue, ConstantQueue]] = None

    def initialize_queue(self):
        if self.queue is None:
            self.queue = self.queue_factory()

    async def get(self):
        self.initialize_queue()
        self.ch.initialize()
        return await self.queue.get()

    def get_nowait(self):
        self.initialize_queue()
        return self.queue.get_nowait()

    def put_nowait(self, item):
        self.initialize_queue()
        return self.queue.put_nowait(item)

    async def put(self, item):
        self.initialize_queue()
        return await self.queue.put(item)

    def empty(self):
        return self.queue is None or self.queue.empty()


class ChannelBase(object):
    """A channel receives records by put/put_nowait. Consumers subscribe with `create_queue` and fetch records from
    the returned LazyAsyncQueue.
    """

    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            if not hasattr(self, k):
                setattr(self, k, v)

    def put_nowait(self, item):
        raise NotImplementedError

    async def put(self, item):
        return self.put_nowait(item)

    def close(self):
        """No more records will arrive."""
        self.put_nowait(END)

    def create_queue(self) -> LazyAsyncQueue:
        raise NotImplementedError

    def __lshift__(self, other):
        """
        ch << 1 == ch.put_nowait(1)
        """
        self.put_nowait(other)
        return self

    def __rshift__(self, tasks) -> Union['Channel', Sequence['Channel']]:
        """
        ch >> task                   -> task(ch)
        ch >> [task1, task2, task3]  -> [task1(out1), task2(out2), task3(out3)] with out1-3 = ch.into(3)
        """
        if not isinstance(tasks, abc.Sequence):
            return tasks(self)
        if len(tasks) == 1:
            outlets = [self]
        else:
            outlets = self.into(*[f"outlet{i}" for i in range(len(tasks))])
        outputs = [task(outlet) for task, outlet in zip(tasks, outlets)]
        if isinstance(tasks, tuple):
            outputs = tuple(outputs)
        return outputs

    def __or__(self, tasks) -> Union['Channel', Sequence['Channel']]:
        """
        ch | [a, b, c, d] equals to ch >> [a, b, c, d]
        """
        return self >> tasks

    def __getitem__(self, key) -> "Channel":
        """
        name_ch = record_ch['setname'] equals to GetItem('setname')(record_ch)
        """
        from ddaflow.core.operators import GetItem
        return GetItem(key=key)(self)

    @classmethod
    def value(cls, value, **kwargs) -> 'ConstantChannel':
        """A value channel replaying `value` to its consumers forever.
        """
        if callable(value) and not isinstance(value, type):
            raise ValueError("A callable object is passed as a channel value, specify the argument name "
                             "explicitly like: `ch.map(by=lambda x: x)`.")
        ch = ConstantChannel(**kwargs)
        ch.put_nowait(value)
        return ch

    @classmethod
    def end(cls, **kwargs) -> 'ConstantChannel':
        return cls.value(END, **kwargs)

    @classmethod
    def empty(cls, **kwargs) -> 'Channel':
        """An already closed stream channel, stands in for the outputs of a disabled branch."""
        ch = Channel(**kwargs)
        ch.put_nowait(END)
        return ch

    @classmethod
    def values(cls, *args, **kwargs) -> 'Channel':
        """
        Channel.values(1, 2, 3) emits 1, 2, 3 then closes.
        """
        ch = Channel(**kwargs)
        for item in args:
            ch.put_nowait(item)
        ch.put_nowait(END)
        return ch

    @classmethod
    def from_list(cls, items: Sequence, **kwargs) -> "Channel":
        return cls.values(*items, **kwargs)


class Channel(ChannelBase):
    """A stream channel. Records put before the event loop runs are buffered, afterwards they are pushed into the
    queue of the single consumer. A second consumer must go through an explicit `into` broadcast.
    """
    max_consumers: Optional[int] = 1

    def __init__(self, queue_factory: type = asyncio.Queue, **kwargs):
        super().__init__(**kwargs)
        self.buffer: deque = deque()
        self.initialized = False
        self.queues: List[LazyAsyncQueue] = []
        self.queue_factory = queue_factory
        self.id = ddaflow.context.random_id
        self.task = kwargs.get('task', None)

    def __repr__(self):
        producer = f" of {self.task}" if self.task is not None else ""
        return f"{type(self).__name__}[{self.id[:8]}]{producer}"

    def serialize(self) -> ChannelSpec:
        return ChannelSpec(
            id=self.id,
            task_id=self.task.config_dict['id'] if self.task is not None and self.task.initialized else None,
            constant=isinstance(self, ConstantChannel)
        )

    def initialize(self):
        if not self.initialized:
            self.initialized = True
            while self.buffer:
                self.put_nowait(self.buffer.popleft())

    def put_nowait(self, item):
        if self.initialized:
            for q in self.queues:
                q.put_nowait(item)
        else:
            self.buffer.append(item)

    async def put(self, item):
        self.initialize()
        for q in self.queues:
            await q.put(item)

    def create_queue(self) -> LazyAsyncQueue:
        if self.initialized:
            raise ChannelSubscribeError(f"Can not subscribe to {self} after the flow started.")
        if self.max_consumers is not None and len(self.queues) >= self.max_consumers:
            raise ChannelSubscribeError(
                f"{self} already has a consumer, use `into` to broadcast it into several named outlets.")
        q = LazyAsyncQueue(ch=self, queue_factory=self.queue_factory)
        self.queues.append(q)
        return q


class ConstantChannel(Channel):
    """A value channel, any number of consumers observe the same value."""
    max_consumers = None

    def __init__(self, **kwargs):
        super().__init__(queue_factory=ConstantQueue, **kwargs)


class Consumer(Fetcher):
    """Fetch from several queues at once and emit tuples (a single queue emits bare items). Iteration stops as soon
    as any queue emits END. A consumer without queues emits an empty tuple once, one with only value channels
    emits once as well.
    """

    def __init__(self, *queues: LazyAsyncQueue, **kwargs):
        self.queues: List[LazyAsyncQueue] = list(queues)
        self.task = kwargs.get('task', None)
        assert all(isinstance(q, LazyAsyncQueue) for q in self.queues)
        self.num_emitted = 0

    @property
    def empty(self):
        return len(self.queues) == 0

    @property
    def constant(self):
        """Only value channels, emits a single tuple like an empty consumer."""
        return bool(self.queues) and all(isinstance(q.ch, ConstantChannel) for q in self.queues)

    @property
    def single(self):
        return len(self.queues) == 1

    def __len__(self):
        return len(self.queues)

    def pack(self, values: list):
        self.num_emitted += 1
        return values[0] if self.single else tuple(values)

    async def get(self):
        if (self.empty or self.constant) and self.num_emitted >= 1:
            return END
        values = []
        for q in self.queues:
            value = await q.get()
            if isinstance(value, End):
                return END
            values.append(value)
        return self.pack(values)

    def get_nowait(self):
        if (self.empty or self.constant) and self.num_emitted >= 1:
            return END
        values = []
        for q in self.queues:
            value = q.get_nowait()
            if isinstance(value, End):
                return END
            values.append(value)
        return self.pack(values)

    @classmethod
    def from_channels(cls, *channels: Union[Channel, Any], **kwargs) -> 'Consumer':
        channels = list(channels)
        for i, ch in enumerate(channels):
            if not isinstance(ch, Channel):
                if isinstance(ch, (tuple, list)) and any(isinstance(v, Channel) for v in ch):
                    raise ValueError(f"The input: {ch} is a list/tuple of channels, "
                                     f"unpack it before passing into a Task/Flow")
                channels[i] = Channel.value(ch)
        queues = [ch.create_queue() for ch in channels]
        return cls(*queues, **kwargs)


def _a(*args: Union[object, Channel]):
    pass


ARGS_SIG = list(inspect.signature(_a).parameters.values())[0]

Output = Union[Sequence[Channel], Channel]


def _b() -> Output:
    pass


OUTPUT_ANNOTATION = inspect.signature(_b).return_annotation
