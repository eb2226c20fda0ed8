import inspect
import types
from collections import defaultdict, deque
from functools import partial
from typing import Union, Callable, List, Tuple, Hashable

from makefun import with_signature

from ddaflow.core.channel import ARGS_SIG, OUTPUT_ANNOTATION


def _self_func(self):
    pass


SELF_SIG = list(inspect.signature(_self_func).parameters.values())[0]


def class_to_method(cls: type, method_name: str = None):
    """Wrap an operator class into a channel method, the keyword arguments of `cls.__init__` become keyword only
    arguments of the method:

        class Map(Operator):
            def __init__(self, by: Callable, **kwargs): ...

    turns into:

        def map(self, *args, by: Callable, **kwargs):
            return Map(by=by, **kwargs)(self, *args)
    """
    assert isinstance(cls, type), "The argument must be a class"
    fn = types.MethodType(cls.__init__, object)
    fn_name = method_name or cls.__name__.lower()
    params = list(inspect.signature(fn).parameters.values())
    for i, param in enumerate(params):
        if param.kind == inspect.Parameter.VAR_POSITIONAL:
            raise ValueError(f"{cls}.__init__ should not have a VAR_POSITIONAL parameter.")
        elif param.kind == inspect.Parameter.POSITIONAL_OR_KEYWORD:
            params[i] = param.replace(kind=inspect.Parameter.KEYWORD_ONLY)
    sig = inspect.Signature([SELF_SIG, ARGS_SIG] + params, return_annotation=OUTPUT_ANNOTATION)

    @with_signature(sig, func_name=fn_name, qualname=fn_name, doc=cls.__doc__)
    def inner(self, *args, **kwargs):
        return cls(**kwargs)(self, *args)

    return inner


def extend_method(cls):
    """Decorator to extend attributes of a class. Can be used in two ways:

    1:
    @extend_method(some_class)
    def new_method(self):
        pass

    2:
    @extend_method(some_class)
    class A:
        def new_method1(self):
            pass
    """

    def set_method(obj: Union[type, Callable]):
        funcs = []
        if inspect.isclass(obj):
            for name, func in inspect.getmembers(obj):
                if not name.startswith('_'):
                    funcs.append((name, func))
        elif inspect.isfunction(obj):
            funcs.append((None, obj))
        else:
            raise ValueError("Should be a class or function")

        for func_name, func in funcs:
            setattr(cls, func_name or func.__name__, func)
        return obj

    return set_method


def class_deco(base_cls: type, method_name: str) -> Callable:
    def deco(fn: Callable = None, **kwargs) -> base_cls:
        """
        For base_cls is Task, method_name is run, wrap a function

            @deco(cpu=2)
            def test(a, b, c) -> d:
                "doc"

        into a Class and return an instance of it:

            class Test(Task):
                def run(self, a, b, c) -> d:
                    "doc"
                    return test(a, b, c)

            Test(cpu=2)

        A function whose first argument is `self` receives the task object.
        """
        if fn is None:
            return partial(deco, **kwargs)
        cls_name: str = fn.__name__
        cls_name = cls_name[0].upper() + cls_name[1:]

        sig = inspect.signature(fn)
        params = list(sig.parameters.values())
        options = {
            'doc': fn.__doc__,
            'func_name': method_name,
            'qualname': method_name
        }
        first_is_self = params and params[0].name == 'self' \
            and params[0].kind == inspect.Parameter.POSITIONAL_OR_KEYWORD
        if not first_is_self:
            params.insert(0, SELF_SIG)

            @with_signature(inspect.Signature(params, return_annotation=sig.return_annotation), **options)
            def wrapper(self, *args, **kwargs):
                return fn(*args, **kwargs)
        else:
            @with_signature(inspect.Signature(params, return_annotation=sig.return_annotation), **options)
            def wrapper(self, *args, **kwargs):
                return fn(self, *args, **kwargs)
        wrapper.__source_func__ = fn
        kwargs.setdefault('name', fn.__name__)
        return type(cls_name, (base_cls,), {method_name: wrapper, '__doc__': fn.__doc__})(**kwargs)

    deco.__name__ = deco.__qualname__ = base_cls.__name__.lower()
    return deco


def check_cycle(edges: List[Tuple[Hashable, Hashable]]) -> bool:
    """Whether the directed graph given by `edges` has a cycle, i.e. no topological order covers every node."""
    nodes = {node for edge in edges for node in edge}
    children, indegree = defaultdict(list), {node: 0 for node in nodes}
    for src, tgt in edges:
        children[src].append(tgt)
        indegree[tgt] += 1

    ready = deque(node for node, degree in indegree.items() if degree == 0)
    num_sorted = 0
    while ready:
        node = ready.popleft()
        num_sorted += 1
        for child in children[node]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    return num_sorted != len(nodes)
