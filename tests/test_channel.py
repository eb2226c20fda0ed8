import pytest

from ddaflow.api import *


def test_stream_channel_has_one_consumer():
    @flow
    def f():
        ch = Channel.values(1, 2)
        ch.map(by=str)
        ch.map(by=repr)

    with pytest.raises(ComponentCallError) as exc_info:
        f()
    assert isinstance(root_cause(exc_info.value), ChannelSubscribeError)


def test_into_broadcasts_to_every_outlet():
    first, second = [], []

    @flow
    def f():
        a, b = Channel.values(1, 2, 3).into('first', 'second')
        a.subscribe(on_next=first.append)
        b.map(by=lambda x: -x).subscribe(on_next=second.append)

    run(f())
    assert first == [1, 2, 3]
    assert second == [-1, -2, -3]


def test_into_needs_distinct_names():
    @flow
    def f():
        Channel.values(1).into('same', 'same')

    with pytest.raises(ComponentCallError):
        f()


def test_value_channel_is_shared():
    results = []

    @flow
    def f():
        db = Channel.value('db')
        Channel.values(1, 2).cross(db).subscribe(on_next=results.append)
        Channel.values(3).cross(db).subscribe(on_next=results.append)

    run(f())
    assert sorted(results) == [(1, 'db'), (2, 'db'), (3, 'db')]


def test_value_rejects_callables():
    with pytest.raises(ValueError):
        Channel.value(lambda x: x)


def test_rshift_to_several_tasks(tmp_path):
    results = []

    @task
    def add_one(x: int) -> int:
        return x + 1

    @task
    def add_two(x: int) -> int:
        return x + 2

    @flow(workdir=str(tmp_path))
    def f():
        outputs = Channel.values(1, 2) >> [add_one, add_two]
        merge(*outputs).subscribe(on_next=results.append)

    run(f())
    assert sorted(results) == [(2, 3), (3, 4)]


def test_consumer_zips_inputs():
    results = []

    @flow
    def f():
        merge(Channel.values(1, 2, 3), Channel.values('a', 'b'), Channel.value('v')) \
            .subscribe(on_next=results.append)

    run(f())
    # stops with the shortest stream
    assert results == [(1, 'a', 'v'), (2, 'b', 'v')]
