"""
Nested, attribute-accessible dictionaries and a coroutine-safe context store. The merging rules follow
prefect.utilities.context.
"""
import contextlib
import contextvars
from collections import UserDict
from collections.abc import MutableMapping
from copy import deepcopy
from typing import Any, Iterator, Union

DictLike = Union[dict, "DotDict"]


def merge_dicts(d1: DictLike, d2: DictLike) -> DictLike:
    """Return a copy of `d1` updated by `d2`. Values that are mappings on both sides are merged recursively,
    any other value of `d2` replaces the one in `d1`.

    Parameters
    ----------
    d1: the mapping to be updated
    d2: the mapping providing new values

    Returns
    -------
    A new mapping of the same type as `d1`
    """
    merged = d1.copy()
    for key, value in d2.items():
        old = merged.get(key)
        if isinstance(old, MutableMapping) and isinstance(value, MutableMapping):
            merged[key] = merge_dicts(old, value)
        else:
            merged[key] = value
    return merged


def to_nested(obj: Any, dct_class: type = dict) -> Any:
    """Convert every mapping found in `obj` (recursively, including inside lists/tuples/sets) into `dct_class`.
    """
    if isinstance(obj, (list, tuple, set)) and not hasattr(obj, '_fields'):
        return type(obj)(to_nested(item, dct_class) for item in obj)
    if isinstance(obj, MutableMapping):
        return dct_class({k: to_nested(v, dct_class) for k, v in obj.items()})
    return obj


class DotDict(UserDict):
    """A dict supports attribute access, nested dicts are converted into DotDict when being set.

    Example:
        dot = DotDict({'task_config': {'cpu': 2}})
        dot.task_config.cpu # 2
    """

    def __init__(self, *args, **kwargs):
        super().__init__()
        self.update(*args, **kwargs)

    def update(self, *args, **kwargs) -> None:
        for key, value in dict(*args, **kwargs).items():
            self.data[key] = to_nested(value, type(self))

    def __getattr__(self, item):
        if item == 'data':
            raise AttributeError(item)
        try:
            return self.data[item]
        except KeyError as e:
            raise AttributeError(item) from e

    def __setattr__(self, key, value):
        if key == 'data' or key.startswith('_'):
            object.__setattr__(self, key, value)
        else:
            self[key] = value

    def __delattr__(self, item):
        del self[item]

    def __repr__(self):
        return f"{type(self).__name__}({self.data})"

    def to_dict(self) -> dict:
        return to_nested(self.data, dict)


class MergingDotDict(DotDict):
    """DotDict whose `update` merges nested mappings instead of replacing them."""

    def update(self, *args, **kwargs) -> None:
        super().update(merge_dicts(self.data, dict(*args, **kwargs)))


class Context(DotDict):
    """A context store whose content is held in a ContextVar, thus every asyncio task (and thread) sees its own
    copy of the data after entering `with context(...)`.

    Example:
        with context({'task_config': {'cpu': 2}}, run_key='xxx'):
            context.task_config.cpu # 2
    """

    def __init__(self, *args, **kwargs):
        object.__setattr__(self, '_var', contextvars.ContextVar(f"ddaflow-context-{id(self)}"))
        object.__setattr__(self, '_default', {})
        # process wide, not bound to the ContextVar
        object.__setattr__(self, '_info', DotDict())
        super().__init__(*args, **kwargs)

    @property
    def data(self) -> MergingDotDict:
        try:
            return self._var.get()
        except LookupError:
            # the ContextVar is empty in a new thread, fall back to the defaults
            self._var.set(MergingDotDict(deepcopy(self._default)))
            return self._var.get()

    @data.setter
    def data(self, value):
        self._var.set(value if isinstance(value, MergingDotDict) else MergingDotDict(value))

    def set_default(self, dic: dict):
        """Values used for initializing the context in threads that never entered the context."""
        object.__setattr__(self, '_default', deepcopy(dict(dic)))
        self.update(dic)

    def update(self, *args, **kwargs) -> None:
        self.data.update(*args, **kwargs)

    def __repr__(self):
        return f"{type(self).__name__}({self.data})"

    def __getstate__(self):
        raise TypeError("The context can not be pickled, always access it as `ddaflow.context`.")

    @contextlib.contextmanager
    def __call__(self, *args: MutableMapping, **kwargs: Any) -> Iterator["Context"]:
        """Temporally update the context, the previous content is restored on exit.

        Example:
            with context(dict(a=1), b=2):
                assert context.a == 1
        """
        prev = self.to_dict()
        updates = {}
        for arg in args:
            updates = merge_dicts(updates, dict(arg or {}))
        updates = merge_dicts(updates, kwargs)
        try:
            self.data = MergingDotDict(merge_dicts(deepcopy(prev), updates))
            yield self
        finally:
            self.data = MergingDotDict(prev)
