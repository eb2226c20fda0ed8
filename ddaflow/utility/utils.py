import importlib
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Union, Generator


def import_object(name: str) -> Any:
    """Import an object given a fully-qualified name like `distributed.LocalCluster`.
    """
    try:
        mod_name, attr_name = name.rsplit(".", 1)
    except ValueError:
        return importlib.import_module(name)
    mod = importlib.import_module(mod_name)
    return getattr(mod, attr_name)


@contextmanager
def change_cwd(path: Union[str, Path]) -> Generator[Path, None, None]:
    """Change into `path` (created if missing) within the with scope.
    """
    path = Path(path).expanduser().resolve()
    path.mkdir(parents=True, exist_ok=True)
    prev_cwd = os.getcwd()
    os.chdir(path)
    try:
        yield path
    finally:
        os.chdir(prev_cwd)


def tail(text: str, num_lines: int = 20) -> str:
    """Last lines of a (stderr) text."""
    return '\n'.join(text.rstrip().splitlines()[-num_lines:])
