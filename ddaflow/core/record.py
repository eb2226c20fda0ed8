"""
Records are the items flowing through channels. Pipeline channels carry `typing.NamedTuple` records, so fields
are read by name (`record.setname`) and grouping keys are field names. Plain tuples still work with positional keys.
"""
from typing import Any, Callable, Tuple, Union, Sequence

Key = Union[str, int, Sequence[Union[str, int]], Callable[[Any], Any], None]


def is_record(data: Any) -> bool:
    """Whether `data` is a NamedTuple instance."""
    return isinstance(data, tuple) and hasattr(type(data), '_fields')


def _get_field(data: Any, field: Union[str, int]):
    if isinstance(field, int):
        return data[field]
    if is_record(data):
        try:
            return getattr(data, field)
        except AttributeError:
            raise KeyError(f"The record {type(data).__name__} has no field `{field}`, "
                           f"fields are: {data._fields}") from None
    if isinstance(data, dict):
        return data[field]
    raise KeyError(f"Can not get field `{field}` from a {type(data).__name__}: {data}")


def get_key(data: Any, by: Key = None) -> Any:
    """Project a record onto its grouping key.

    Parameters
    ----------
    data
        the record, a NamedTuple, tuple or dict
    by
        None: the record itself, str/int: one field, tuple/list: a tuple of fields, callable: by(data)
    """
    if by is None:
        return data
    if callable(by):
        return by(data)
    if isinstance(by, (str, int)):
        return _get_field(data, by)
    return tuple(_get_field(data, field) for field in by)


def key_fields(data: Any, by: Key) -> Tuple[int, ...]:
    """Positions of the key fields of `by` inside `data`, only for field names/positions."""
    if by is None or callable(by):
        return ()
    fields = [by] if isinstance(by, (str, int)) else list(by)
    positions = []
    for field in fields:
        if isinstance(field, int):
            positions.append(field if field >= 0 else len(data) + field)
        elif is_record(data):
            positions.append(data._fields.index(field))
        else:
            raise KeyError(f"Field name `{field}` can only be used with NamedTuple records, got {data}")
    return tuple(positions)


def rebuild(template: Any, values: Sequence) -> Any:
    """Build a record of the same type as `template` from `values`."""
    if is_record(template):
        return type(template)(*values)
    return tuple(values)


def replace(record: Any, **fields) -> Any:
    """A copy of a NamedTuple record with some fields changed. Records are never mutated."""
    return record._replace(**fields)


def sort_records(items: Sequence, by: Key = None) -> tuple:
    """Collected records ordered by key, a collected channel then no longer depends on arrival order."""
    return tuple(sorted(items, key=lambda item: get_key(item, by)))


def sort_grouped(data: Any, by: Union[str, int]) -> Any:
    """Reorder every list field of a grouped record by the values of its list field `by`."""
    values = _get_field(data, by)
    order = sorted(range(len(values)), key=lambda i: values[i])
    return rebuild(data, [[v[i] for i in order] if isinstance(v, list) else v for v in data])
