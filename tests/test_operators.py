from typing import NamedTuple

import pytest

from ddaflow.api import *


class Table(NamedTuple):
    setname: str
    td: str
    table: str


TABLES = [
    Table('A', 'target', 'a_t'),
    Table('B', 'target', 'b_t'),
    Table('A', 'decoy', 'a_d'),
    Table('B', 'decoy', 'b_d'),
]


def test_map_filter_unique():
    results = []

    @flow
    def f():
        Channel.values(1, 2, 2, 3, 4) \
            .unique() \
            .map(by=lambda x: x * 10) \
            .filter(by=lambda x: x > 10) \
            .subscribe(on_next=results.append)

    run(f())
    assert results == [20, 30, 40]


def test_unique_by_field():
    results = []

    @flow
    def f():
        Channel.values(*TABLES).unique(by='setname').subscribe(on_next=results.append)

    run(f())
    assert results == [TABLES[0], TABLES[1]]


def test_group_tuple_keeps_first_seen_order():
    results = []

    @flow
    def f():
        Channel.values(*TABLES).group_tuple(by='setname').subscribe(on_next=results.append)

    run(f())
    assert results == [
        Table('A', ['target', 'decoy'], ['a_t', 'a_d']),
        Table('B', ['target', 'decoy'], ['b_t', 'b_d']),
    ]
    assert all(isinstance(r, Table) for r in results)


def test_group_tuple_then_transpose_gives_the_items_back():
    grouped, items = [], []

    @flow
    def f():
        groups, to_transpose = Channel.values(*TABLES).group_tuple(by=('setname',)).into('grouped', 'transposed')
        groups.subscribe(on_next=grouped.append)
        to_transpose.transpose(by='setname').subscribe(on_next=items.append)

    run(f())
    assert len(grouped) == 2
    assert sorted(items) == sorted(TABLES)


def test_transpose_length_mismatch():
    @flow
    def f():
        Channel.values(Table('A', ['target', 'decoy'], ['a_t'])).transpose(by='setname')

    with pytest.raises(TransposeLengthError):
        run(f())


@pytest.mark.parametrize('operator', ['unique', 'group_tuple'])
def test_grouping_on_a_list_field(operator):
    @flow
    def f():
        grouped = Channel.values(*TABLES).group_tuple(by='setname')
        getattr(grouped, operator)(by='td')

    with pytest.raises(UnhashableKeyError) as exc_info:
        run(f())
    assert "'td'" in str(exc_info.value)
    assert "['target', 'decoy']" in str(exc_info.value)


def test_join_drops_unmatched_keys():
    results = []

    @flow
    def f():
        left = Channel.values(('C', 3), ('B', 2), ('A', 1))
        right = Channel.values(('B', 'b'), ('A', 'a'), ('D', 'd'))
        left.join(right, by=0).subscribe(on_next=results.append)

    run(f())
    assert results == [(('A', 1), ('A', 'a')), (('B', 2), ('B', 'b'))]


def test_join_into_record():
    results = []

    @flow
    def f():
        left = Channel.values(*TABLES[:2])
        right = Channel.values(*TABLES[2:])
        left.join(right, by='setname', into=lambda t, d: (t.setname, t.table, d.table)) \
            .subscribe(on_next=results.append)

    run(f())
    assert results == [('A', 'a_t', 'a_d'), ('B', 'b_t', 'b_d')]


def test_combine_and_cross():
    combined, crossed = [], []

    @flow
    def f():
        Channel.values(1, 2).combine(Channel.values('x', 'y')).subscribe(on_next=combined.append)
        Channel.values(1, 2).cross(Channel.value('db')).subscribe(on_next=crossed.append)

    run(f())
    assert combined == [(1, 'x'), (1, 'y'), (2, 'x'), (2, 'y')]
    assert crossed == [(1, 'db'), (2, 'db')]


def test_choice_dispatches_by_field():
    targets, decoys = [], []

    @flow
    def f():
        target, decoy = Channel.values(*TABLES).choice(by='td', outlets=('target', 'decoy'))
        target.subscribe(on_next=targets.append)
        decoy.subscribe(on_next=decoys.append)

    run(f())
    assert [t.table for t in targets] == ['a_t', 'b_t']
    assert [d.table for d in decoys] == ['a_d', 'b_d']


def test_choice_unknown_outlet():
    @flow
    def f():
        Channel.values(Table('A', 'unknown', 'a')).choice(by='td', outlets=('target', 'decoy'))

    with pytest.raises(ValueError):
        run(f())


def test_split_and_merge():
    lefts, rights, merged = [], [], []

    @flow
    def f():
        left, right = Channel.values((1, 'a'), (2, 'b')).split(num=2)
        left, left_copy = left.into('left', 'merge')
        left.subscribe(on_next=lefts.append)
        right, right_copy = right.into('right', 'merge')
        right.subscribe(on_next=rights.append)
        merge(left_copy, right_copy).subscribe(on_next=merged.append)

    run(f())
    assert lefts == [1, 2]
    assert rights == ['a', 'b']
    assert merged == [(1, 'a'), (2, 'b')]


def test_materializing_operators():
    results = {}

    @flow
    def f():
        Channel.values(3, 1, 2).collect().subscribe(on_next=lambda x: results.update(collect=x))
        Channel.empty().collect().subscribe(on_next=lambda x: results.update(empty=x))
        Channel.values(3, 1, 2).count().subscribe(on_next=lambda x: results.update(count=x))
        Channel.values(3, 1, 2).reduce(by=lambda a, b: a + b).subscribe(on_next=lambda x: results.update(total=x))
        Channel.values([1, [2]], (3,)).flatten().to_list().subscribe(on_next=lambda x: results.update(flat=x))
        Channel.values(3, 1, 2).first().subscribe(on_next=lambda x: results.update(first=x))

    run(f())
    assert results == {
        'collect': (3, 1, 2),
        'empty': (),
        'count': 3,
        'total': 6,
        'flat': [1, [2], 3],
        'first': 3,
    }


def test_flatten_keeps_records():
    results = []

    @flow
    def f():
        Channel.values(tuple(TABLES[:2])).flatten().subscribe(on_next=results.append)

    run(f())
    assert results == TABLES[:2]


def test_mix_and_concat():
    mixed, concatenated = [], []

    @flow
    def f():
        Channel.values(1, 2).mix(Channel.values(3, 4)).subscribe(on_next=mixed.append)
        Channel.values(1, 2).concat(Channel.values(3, 4)).subscribe(on_next=concatenated.append)

    run(f())
    assert sorted(mixed) == [1, 2, 3, 4]
    assert mixed.index(1) < mixed.index(2) and mixed.index(3) < mixed.index(4)
    assert concatenated == [1, 2, 3, 4]


def test_get_item():
    results = []

    @flow
    def f():
        Channel.values(*TABLES[:2])['table'].subscribe(on_next=results.append)

    run(f())
    assert results == ['a_t', 'b_t']
