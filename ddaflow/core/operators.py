"""
Dataflow operators. Operators run in the main event loop, have no runner and no run state. Streaming operators
(Map, Filter, ...) emit as soon as an item arrives, materializing ones (GroupTuple, Join, Combine, Collect, ...)
wait for their inputs to close.

Every operator is also a method of channels:

    ch.map(by=lambda x: x * 2)
    left.join(right, by='setname')
    target, decoy = records.choice(by='td', outlets=('target', 'decoy'))
"""
import asyncio
import re
from collections import OrderedDict
from typing import Callable, Any, Union, Sequence, Tuple, List

import ddaflow
from ddaflow.core.channel import ConstantChannel, END, Consumer, LazyAsyncQueue, ChannelBase, Channel
from ddaflow.core.record import Key, get_key, key_fields, rebuild, is_record
from ddaflow.core.task import BaseTask
from ddaflow.core.utils import extend_method, class_to_method

Predicate = Callable[[Any], bool]


class TransposeLengthError(ValueError):
    pass


class UnhashableKeyError(TypeError):
    pass


class Operator(BaseTask):
    """Base class for all operators, subclass of BaseTask, all operators runs in the main loop in sequence
    and do not have runners and run states.
    """

    @property
    def is_operator(self) -> bool:
        return True


class NotSet(object):
    """Sentinel surviving the deepcopy made when an operator template is called."""

    def __copy__(self):
        return self

    def __deepcopy__(self, memodict=None):
        return self

    def __repr__(self):
        return "NOTSET"


NOTSET = NotSet()


def sorted_keys(keys) -> list:
    """Keys sorted for reproducible output, falls back to arrival order for keys that do not compare."""
    keys = list(keys)
    try:
        return sorted(keys)
    except TypeError:
        return keys


def hashable_key(operator: BaseTask, data, by: Key) -> Any:
    """The key of `data` projected by `by`, usable to bucket items."""
    key = get_key(data, by)
    try:
        hash(key)
    except TypeError as e:
        raise UnhashableKeyError(f"{operator}: can not group on the key {key!r} of {data} projected by {by!r}, "
                                 f"it holds a list field: {e}") from e
    return key


async def drain(q: LazyAsyncQueue) -> list:
    if isinstance(q.ch, ConstantChannel):
        return [await q.get()]
    return [item async for item in q]


class Merge(Operator):
    """Zip channels into a channel of tuples."""
    pass


class GetItem(Operator):
    """Emit `get_key(item, key)` of each item: a field of a record, an index of a tuple or a key of a dict.
    Items without the field emit `default`.
    """

    def __init__(self, key: Any, default: Any = None, **kwargs):
        super().__init__(**kwargs)
        self.key = key
        self.default = default

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            try:
                res = get_key(data, self.key)
            except (TypeError, KeyError, IndexError, AttributeError):
                from copy import deepcopy
                res = deepcopy(self.default)
            await self.enqueue_res(res)


class Mix(Operator):
    """Items emitted by several stream channels are interleaved into a single channel, the order of items
    coming from the same channel is kept.
    """

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        if any(isinstance(q.ch, ConstantChannel) for q in consumer.queues):
            raise ValueError("Can not mix with a value channel.")

        async def pump_queue(q: LazyAsyncQueue):
            async for data in q:
                await self.enqueue_res(data)

        futures = [asyncio.ensure_future(pump_queue(q)) for q in consumer.queues]
        if not futures:
            return
        done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
        for fut in pending:
            fut.cancel()
        self.check_future_exceptions(list(done) + list(pending))


class Concat(Operator):
    """Items of the input channels are concatenated in the order of the input channels."""

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        for q in consumer.queues:
            for data in await drain(q):
                await self.enqueue_res(data)


class Collect(Operator):
    """Opposite to flatten, turns a channel into one tuple. An empty channel emits an empty tuple."""

    def finalize(self, values: list):
        return tuple(values)

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        values = [data async for data in consumer]
        await self.enqueue_res(self.finalize(values))


class ToList(Collect):
    """Like Collect but emits a list."""

    def finalize(self, values: list):
        return list(values)


class Choice(Operator):
    """Dispatch each item into one of the named outlets according to `get_key(item, by)`, returns one channel
    per outlet in the order of `outlets`.
    """

    def __init__(self, by: Key, outlets: Sequence[Any], **kwargs):
        outlets = tuple(outlets)
        if len(outlets) < 2 or len(set(outlets)) != len(outlets):
            raise ValueError(f"Choice needs at least two distinct outlets, got {outlets}")
        super().__init__(num_out=len(outlets), **kwargs)
        self.by = by
        self.outlets = outlets

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            value = get_key(data, self.by)
            if value not in self.outlets:
                raise ValueError(f"{self}: {value} of {data} is not one of the outlets {self.outlets}")
            await self.enqueue_res(data, self.outlets.index(value))


class Split(Operator):
    """Used when items are tuples, the i-th element of each item goes into the i-th output channel.

        mzmls, dbs = mzml_ch.cross(db_ch).split(num=2)
    """

    def __init__(self, num: int, **kwargs):
        if num < 2:
            raise ValueError("Number of outputs must be at least 2.")
        super().__init__(num_out=num, **kwargs)

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            await self.enqueue_res(data)


class Into(Operator):
    """Broadcast every item into each of the named outlets. The only way a stream channel can feed several
    consumers.
    """

    def __init__(self, names: Sequence[str], **kwargs):
        names = tuple(names)
        if len(names) < 2 or len(set(names)) != len(names):
            raise ValueError(f"Into needs at least two distinct outlet names, got {names}")
        super().__init__(num_out=len(names), **kwargs)
        self.names = names

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            for ch in self.output:
                await ch.put(data)


class Subscribe(Operator):
    """Call on_next for each item and on_complete when the channel closes, items pass through."""

    def __init__(self, on_next: Callable = None, on_complete: Callable = None, **kwargs):
        super().__init__(**kwargs)
        self.on_next = on_next
        self.on_complete = on_complete

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        async for data in consumer:
            if self.on_next:
                self.on_next(data)
            await self.enqueue_res(data)
        if self.on_complete:
            self.on_complete()


class View(Subscribe):
    """Print each item emitted by the channel."""

    def __init__(self, fmt="{x}", **kwargs):
        super().__init__(on_next=self.print, **kwargs)
        self.fmt = fmt

    def print(self, value):
        print(self.fmt.format(x=value, self=self))


class Map(Operator):
    """Map each item to `by(item)`, order preserving."""

    def __init__(self, by: Callable, **kwargs):
        super().__init__(**kwargs)
        self.fn = by

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            await self.enqueue_res(self.fn(data))


class Reduce(Operator):
    """results = f(f(f(result, x1), x2), x3), emitted when the channel closes."""
    NOTSET = NOTSET

    def __init__(self, by: Callable[[Any, Any], Any], result=NOTSET, **kwargs):
        super().__init__(**kwargs)
        self.fn = by
        self.result = result

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        result = self.result
        async for data in consumer:
            result = data if result is self.NOTSET else self.fn(result, data)
        if result is not self.NOTSET:
            await self.enqueue_res(result)


class Count(Reduce):
    """Number of items, 0 for an empty channel."""

    def __init__(self, **kwargs):
        super().__init__(by=lambda n, _: n + 1, result=0, **kwargs)


class Flatten(Operator):
    """Emit the elements of list/tuple items one by one, down to `max_level` nesting levels. Records are
    never flattened.
    """

    def __init__(self, max_level: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.max_level = max_level or float('inf')

    def traverse(self, items, level: int, flattened: list):
        if level <= self.max_level and isinstance(items, (list, tuple)) and not is_record(items):
            for item in items:
                self.traverse(item, level + 1, flattened)
        else:
            flattened.append(items)

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            flattened = []
            self.traverse(data, 1, flattened)
            for item in flattened:
                await self.enqueue_res(item)


class Filter(Operator):
    """Keep items for which the predicate is true, or which equal `by` if it's not callable."""

    def __init__(self, by: Union[Predicate, object] = lambda x: x, **kwargs):
        super().__init__(**kwargs)
        self.by = by

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            keep = self.by(data) if callable(self.by) else data == self.by
            if keep:
                await self.enqueue_res(data)


class Unique(Operator):
    """Emit items whose key has not been seen before, the first occurrence wins."""

    def __init__(self, by: Key = None, **kwargs):
        super().__init__(**kwargs)
        self.by = by
        self.seen = set()

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            key = hashable_key(self, data, self.by)
            if key not in self.seen:
                self.seen.add(key)
                await self.enqueue_res(data)


class First(Operator):
    """Only emit the first item."""

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            await self.enqueue_res(data)
            return END


class GroupTuple(Operator):
    """Wait for the channel to close, then emit one item per distinct key in first-seen order. The key fields
    keep their value and every other field becomes the list of values of the grouped items:

        Table('A', 'target', f1), Table('A', 'decoy', f2)  --by='setname'-->  Table('A', ['target', 'decoy'], [f1, f2])

    With a callable `by`, items are emitted as (key, [items]).
    """

    def __init__(self, by: Key = 0, **kwargs):
        super().__init__(**kwargs)
        self.by = by
        self.groups: OrderedDict = OrderedDict()

    async def handle_input(self, data, *args, **kwargs):
        if data is not END:
            self.groups.setdefault(hashable_key(self, data, self.by), []).append(data)
            return
        for key, items in self.groups.items():
            await self.enqueue_res(self.group(key, items))
        self.groups = OrderedDict()

    def group(self, key, items: list):
        if callable(self.by):
            return key, items
        template = items[0]
        positions = key_fields(template, self.by)
        values = []
        for i in range(len(template)):
            values.append(template[i] if i in positions else [item[i] for item in items])
        return rebuild(template, values)


class Transpose(Operator):
    """The inverse of GroupTuple: an item whose list fields have length n is emitted as n items, the i-th one
    holding the i-th element of every list field. Key fields given by `by` and non-list fields are repeated.
    Items with list fields of different lengths raise TransposeLengthError.
    """

    def __init__(self, by: Key = None, **kwargs):
        super().__init__(**kwargs)
        self.by = by

    async def handle_input(self, data, *args, **kwargs):
        if data is END:
            return
        for item in self.transpose(data):
            await self.enqueue_res(item)

    def transpose(self, data) -> List[Any]:
        keep = key_fields(data, self.by)
        list_positions = [i for i, v in enumerate(data) if i not in keep and isinstance(v, list)]
        if not list_positions:
            return [data]
        lengths = {len(data[i]) for i in list_positions}
        if len(lengths) != 1:
            raise TransposeLengthError(f"{self}: the list fields of {data} have different lengths: "
                                       f"{sorted(lengths)}")
        items = []
        for n in range(lengths.pop()):
            values = [data[i][n] if i in list_positions else data[i] for i in range(len(data))]
            items.append(rebuild(data, values))
        return items


class Join(Operator):
    """Wait for both channels to close, then emit one item for every pair of left/right items sharing the same
    key, ordered by key. Keys present on one side only are dropped. Items are `(left, right)` unless
    `into(left, right)` is given.
    """

    def __init__(self, by: Key = 0, into: Callable[[Any, Any], Any] = None, **kwargs):
        super().__init__(**kwargs)
        self.by = by
        self.into = into

    def pair(self, left, right):
        return self.into(left, right) if self.into else (left, right)

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        if len(consumer.queues) != 2:
            raise ValueError(f"{type(self).__name__} accepts exactly two channels, got {len(consumer.queues)}")
        left_q, right_q = consumer.queues
        left, right = await drain(left_q), await drain(right_q)
        for item in self.match(left, right):
            await self.enqueue_res(item)

    def match(self, left: list, right: list) -> list:
        left_groups, right_groups = self.groups(left), self.groups(right)
        dropped = set(left_groups).symmetric_difference(right_groups)
        if dropped:
            ddaflow.context.logger.debug(f"{self} dropped unmatched keys: {sorted_keys(dropped)}")
        results = []
        for key in sorted_keys(k for k in left_groups if k in right_groups):
            for left_item in left_groups[key]:
                for right_item in right_groups[key]:
                    results.append(self.pair(left_item, right_item))
        return results

    def groups(self, items: list) -> OrderedDict:
        groups = OrderedDict()
        for item in items:
            groups.setdefault(hashable_key(self, item, self.by), []).append(item)
        return groups


class Combine(Join):
    """Every left item with every right item sharing the key, or with every right item when `by` is None.
    The output is ordered by key, then by arrival.
    """

    def __init__(self, by: Key = None, into: Callable[[Any, Any], Any] = None, **kwargs):
        super().__init__(by=by, into=into, **kwargs)

    def match(self, left: list, right: list) -> list:
        if self.by is None:
            return [self.pair(left_item, right_item) for left_item in left for right_item in right]
        return super().match(left, right)


class Cross(Operator):
    """Keyless combine. A value channel on the right is broadcast over the stream on the left while items
    arrive, a stream on the right is materialized first.
    """

    def __init__(self, into: Callable[[Any, Any], Any] = None, **kwargs):
        super().__init__(**kwargs)
        self.into = into

    async def handle_consumer(self, consumer: Consumer, **kwargs):
        if len(consumer.queues) != 2:
            raise ValueError(f"Cross accepts exactly two channels, got {len(consumer.queues)}")
        left_q, right_q = consumer.queues
        rights = await drain(right_q)
        async for left in left_q:
            for right in rights:
                await self.enqueue_res(self.into(left, right) if self.into else (left, right))


def snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


# channel methods: ch.map(...), ch.group_tuple(...), ch.to_list() ...
for var in tuple(locals().values()):
    if isinstance(var, type) and issubclass(var, Operator) and var not in (Operator, Into):
        extend_method(ChannelBase)(class_to_method(var, snake_case(var.__name__)))


@extend_method(ChannelBase)
def into(self, *names: str) -> Tuple[Channel, ...]:
    """Broadcast this channel into len(names) channels, one per consumer."""
    return Into(names=names)(self)


merge = Merge()
mix = Mix()
concat = Concat()
collect = Collect()
to_list = ToList()
first = First()
count = Count()
view = View()


def map_(by: Callable):
    return Map(by=by)


def filter_(by: Union[Predicate, object] = lambda x: x):
    return Filter(by=by)


def unique(by: Key = None):
    return Unique(by=by)


def flatten(max_level: int = 1):
    return Flatten(max_level=max_level)


def getitem(key: Any, default: Any = None):
    return GetItem(key=key, default=default)


def group_tuple(by: Key = 0):
    return GroupTuple(by=by)


def transpose(by: Key = None):
    return Transpose(by=by)


def join(by: Key = 0, into: Callable = None):
    return Join(by=by, into=into)


def combine(by: Key = None, into: Callable = None):
    return Combine(by=by, into=into)


def cross(into: Callable = None):
    return Cross(into=into)


def choice(by: Key, outlets: Sequence[Any]):
    return Choice(by=by, outlets=outlets)


def split(num: int):
    return Split(num=num)


def reduce_(by: Callable[[Any, Any], Any], result=Reduce.NOTSET):
    return Reduce(by=by, result=result)


def subscribe(on_next: Callable = None, on_complete: Callable = None):
    return Subscribe(on_next=on_next, on_complete=on_complete)
