import hashlib
from pathlib import Path
from typing import Union

import ddaflow


class Target(object):
    """Base class of special items flowing through channels.
    """

    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            if not hasattr(self, k):
                setattr(self, k, v)


class File(Target):
    """A resolved file path plus the md5 of its content. The content hash is the file's identity in invocation
    signatures: two Files with the same hash tokenize to the same value whatever their paths are.
    """
    BLOCK_SIZE = 1 << 16

    def __new__(cls, *args, **kwargs):
        obj = super().__new__(cls)
        obj.path = Path(*[str(arg) for arg in args]).expanduser().resolve()
        return obj

    def __init__(self, *args, **kwargs):
        super().__init__(**kwargs)
        self._hash_key = None
        if not self.path.is_file():
            ddaflow.context.logger.debug(f"File {self.path} does not exist yet.")

    def __getattr__(self, item):
        if item in ('path', '_hash_key'):
            raise AttributeError(item)
        return getattr(self.path, item)

    def __fspath__(self):
        return str(self.path)

    def __str__(self):
        return str(self.path)

    def __repr__(self):
        return f"{type(self).__name__}('{self}')"

    def __eq__(self, other):
        if isinstance(other, File):
            return self.path == other.path
        return NotImplemented

    def __hash__(self):
        return hash(self.path)

    @property
    def hash(self) -> str:
        if not self._hash_key:
            raise ValueError(f"The hash of {self} is not computed, call initialize_hash first.")
        return self._hash_key

    @hash.setter
    def hash(self, value: str):
        if self._hash_key and self._hash_key != value:
            raise ValueError(f"The hash of {self} can only be set once.")
        self._hash_key = value

    @property
    def initialized(self) -> bool:
        return self._hash_key is not None

    def calculate_hash(self) -> str:
        h = hashlib.md5()
        with self.path.open('rb') as f:
            for block in iter(lambda: f.read(self.BLOCK_SIZE), b""):
                h.update(block)
        return h.hexdigest()

    def initialize_hash(self) -> str:
        if not self.initialized:
            self.hash = self.calculate_hash()
        return self.hash

    def check_hash(self) -> bool:
        """True if the file still exists with the content it had when hashed."""
        if not self.initialized:
            return False
        try:
            return self.calculate_hash() == self.hash
        except OSError:
            return False

    def __dask_tokenize__(self):
        return type(self).__name__, self.hash


class Folder(Target):
    def __new__(cls, *args, **kwargs):
        obj = super().__new__(cls)
        obj.path = Path(*[str(arg) for arg in args]).expanduser().resolve()
        return obj

    def __getattr__(self, item):
        if item == 'path':
            raise AttributeError(item)
        return getattr(self.path, item)

    def __fspath__(self):
        return str(self.path)

    def __str__(self):
        return str(self.path)

    def __repr__(self):
        return f"Folder('{self}')"

    def __dask_tokenize__(self):
        return 'Folder', str(self.path)


class Stdout(File):
    """The captured stdout of an external tool, stored in a file."""


class End(Target):
    """End signal of a stream channel.
    """

    def __repr__(self):
        return "[END]"

    def __copy__(self):
        return self

    def __deepcopy__(self, memodict=None):
        return self

    def __reduce__(self):
        return 'END'

    def __hash__(self):
        return hash("[END]")


END = End()
FileLike = Union[str, Path, File]
