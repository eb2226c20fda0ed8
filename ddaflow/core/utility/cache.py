import shutil
from pathlib import Path
from typing import Any, Iterator

from dask.base import tokenize

import ddaflow
from ddaflow.core.utility.target import File


def iter_files(value: Any) -> Iterator[File]:
    """Yield every File nested in records, tuples, lists, sets and dict values."""
    if isinstance(value, File):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_files(v)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for v in value:
            yield from iter_files(v)


class Serializer(object):
    def load(self, file):
        raise NotImplementedError

    def dump(self, value, file):
        raise NotImplementedError


class CloudPickleSerializer(Serializer):
    def load(self, file):
        from cloudpickle import load
        return load(file)

    def dump(self, value, file):
        from cloudpickle import dump
        return dump(value, file)


NO_CACHE = object()


class Cache(object):
    """Persist the output of a task run under its invocation signature. `hash` must produce the same key for
    the same inputs, and different keys as soon as any input content changes.
    """

    def hash(self, **kwargs) -> str:
        raise NotImplementedError

    def put(self, key: str, output):
        raise NotImplementedError

    def get(self, key: str, default=NO_CACHE):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError

    def persist(self):
        raise NotImplementedError

    def persist_single(self, key: str):
        raise NotImplementedError


class LocalCache(Cache):
    """Keys are run directories on disk, the value of a key is dumped into a hidden file inside the directory.
    A value is only valid while every File it contains still has the content it had when cached.
    """
    VALUE_FILE = ".__cache_value__"

    def __init__(self, serializer: Serializer = None, **kwargs):
        super().__init__(**kwargs)
        self.cache = {}
        self.serializer = serializer or CloudPickleSerializer()

    def __copy__(self):
        return self

    def __deepcopy__(self, memodict=None):
        return self

    def hash(self, **kwargs) -> str:
        return tokenize(kwargs)

    def remove(self, key: str):
        value_file = Path(key, self.VALUE_FILE)
        if value_file.exists():
            value_file.unlink()
        return self.cache.pop(key, None)

    def get(self, key: str, default=NO_CACHE) -> Any:
        if key in self.cache:
            value = self.cache[key]
            ddaflow.context.logger.debug(f"Read cache: {key} from memory.")
        else:
            value_file = Path(key, self.VALUE_FILE)
            if not value_file.is_file():
                return default
            try:
                with value_file.open('rb') as f:
                    value = self.serializer.load(f)
            except (OSError, EOFError, ValueError, AttributeError, ImportError) as e:
                ddaflow.context.logger.warning(f"Read cache: {key} from disk failed with error: {e}")
                self.remove(key)
                return default
            ddaflow.context.logger.debug(f"Read cache: {key} from disk.")
        stale = [f for f in iter_files(value) if not f.check_hash()]
        if stale:
            ddaflow.context.logger.warning(f"Cache: {key} is stale, content of {stale[0]} changed. Rerun.")
            self.remove(key)
            return default
        self.cache[key] = value
        return value

    def put(self, key: str, data: Any):
        ddaflow.context.logger.debug(f"Set cache: {key}")
        for f in iter_files(data):
            f.initialize_hash()
        self.cache[key] = data

    def persist(self):
        for key in tuple(self.cache.keys()):
            self.persist_single(key)

    def persist_single(self, key: str):
        value_file = Path(key, self.VALUE_FILE)
        value_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = value_file.with_name(value_file.name + '.tmp')
        with tmp_file.open('wb') as wf:
            self.serializer.dump(self.cache[key], wf)
        # atomic, a killed run never leaves a half written value
        tmp_file.replace(value_file)
        ddaflow.context.logger.debug(f"Write cache: {key}")

    @staticmethod
    def clean_workdir(key: str):
        """Remove everything left by a previous (possibly killed) run in the run directory."""
        path = Path(key)
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)


def get_cache(cache_type: str = 'local', *args, **kwargs) -> Cache:
    cache_cls = {
        'local': LocalCache
    }
    if cache_type not in cache_cls:
        raise ValueError(f"Cache type {cache_type} is not supported, choose one of {list(cache_cls)}")
    return cache_cls[cache_type](*args, **kwargs)
