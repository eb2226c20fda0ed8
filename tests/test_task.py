import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from ddaflow.api import *
from ddaflow.core.engine.resource import GreedySolver, ResourceManager
from ddaflow.core.engine.scheduler import Job


@task
def count_lines(path: File) -> int:
    return len(Path(path).read_text().splitlines())


@task
def double(x: int) -> int:
    return x * 2


def states_of(report: RunReport, task_name: str) -> list:
    return sorted(taskrun.state for taskrun in report.taskruns if taskrun.task == task_name)


def test_task_runs_are_cached(tmp_path):
    results = []

    @flow(workdir=str(tmp_path))
    def f():
        double(Channel.values(1, 2, 3)).subscribe(on_next=results.append)

    report = run(f())
    assert sorted(results) == [2, 4, 6]
    assert report.num_executed == 3

    results.clear()
    report = run(f())
    assert sorted(results) == [2, 4, 6]
    assert report.num_executed == 0
    assert report.num_cached == 3


class Triple(Task):
    def run(self, x: int) -> int:
        return x * 3


def test_class_task_runs_are_cached(tmp_path):
    results = []

    @flow(workdir=str(tmp_path))
    def f():
        Triple()(Channel.values(1, 2)).subscribe(on_next=results.append)

    assert run(f()).num_executed == 2
    report = run(f())
    assert sorted(results) == [3, 3, 6, 6]
    assert report.num_executed == 0
    assert report.num_cached == 2


def test_changed_file_only_reruns_its_branch(tmp_path):
    a, b = tmp_path / 'a.txt', tmp_path / 'b.txt'
    a.write_text("a\n")
    b.write_text("b\nc\n")
    results = []

    @flow(workdir=str(tmp_path / 'work'))
    def f():
        double(count_lines(Channel.values(str(a), str(b)))).subscribe(on_next=results.append)

    report = run(f())
    assert sorted(results) == [2, 4]
    assert report.num_executed == 4

    b.write_text("b\nc\nd\n")
    results.clear()
    report = run(f())
    assert sorted(results) == [2, 6]
    assert states_of(report, 'count_lines') == ['Cached', 'Success']
    assert states_of(report, 'double') == ['Cached', 'Success']


def test_missing_file_input(tmp_path):
    @flow(workdir=str(tmp_path))
    def f():
        count_lines(Channel.values(str(tmp_path / 'missing.txt')))

    with pytest.raises(RunDataFileNotFoundError):
        run(f())


def test_failure_stops_the_run(tmp_path):
    @task
    def fragile(x: int) -> int:
        if x == 2:
            raise ValueError("bad input 2")
        return x

    @flow(workdir=str(tmp_path))
    def f():
        fragile(Channel.values(1, 2, 3))

    with pytest.raises(ValueError, match="bad input 2"):
        run(f())


def test_drop_error_emits_nothing_and_warns(tmp_path):
    results = []

    @task(drop_error=True)
    def fragile(x: int) -> int:
        if x == 2:
            raise ValueError("bad input 2")
        return x

    @flow(workdir=str(tmp_path))
    def f():
        fragile(Channel.values(1, 2, 3)).subscribe(on_next=results.append)

    report = run(f())
    assert sorted(results) == [1, 3]
    assert report.count('Drop') == 1
    assert [w.kind for w in report.warnings] == ['DropWarning']
    assert 'bad input 2' in report.warnings[0].message


def test_retry(tmp_path):
    marker = tmp_path / 'failed_once'

    @task(retry=1, retry_delay=0)
    def flaky(name: str) -> str:
        if not marker.exists():
            marker.write_text("failed")
            raise RuntimeError("first attempt fails")
        return name

    results = []

    @flow(workdir=str(tmp_path / 'work'))
    def f():
        flaky(Channel.values('x')).subscribe(on_next=results.append)

    report = run(f())
    assert results == ['x']
    assert report.num_executed == 1


def test_when_false_leaves_the_task_out(tmp_path):
    results = []

    @task(when=lambda params: params is not None)
    def optional_double(x: int) -> int:
        return x * 2

    @flow(workdir=str(tmp_path))
    def f():
        optional_double(Channel.values(1, 2)).collect().subscribe(on_next=results.append)

    built = f()
    assert built.skipped == ['optional_double']
    assert 'optional_double' not in built.serialize().task_names(operators=True)
    report = run(built)
    assert results == [()]
    assert report.taskruns == []


def test_skip_passes_inputs_through(tmp_path):
    results = []

    @task
    def double_large(x: int) -> int:
        return x * 2

    @double_large.skip
    def small(x):
        return x < 2

    @flow(workdir=str(tmp_path))
    def f():
        double_large(Channel.values(1, 2)).subscribe(on_next=results.append)

    report = run(f())
    assert sorted(results) == [1, 4]
    assert report.count('Skip') == 1


class WriteTable(ToolTask):
    outputs = {'table': '{name}.txt', 'log': '{name}.log'}
    optional_outputs = ('log',)

    def command(self, name: str) -> str:
        return f"echo {name} > {name}.txt"


class Silent(ToolTask):
    outputs = {'table': 'table.txt'}

    def command(self, name: str) -> str:
        return "true"


class Probe(ToolTask):
    default_config = {
        'ok_exit_codes': [0, 3],
    }
    outputs = {'version': 'version.txt'}

    def command(self, code: int) -> str:
        return f"echo v1 > version.txt\necho probe failed >&2\nexit {code}"


def test_tool_task_outputs_and_publish(tmp_path):
    out = tmp_path / 'out'
    results = []

    @flow(workdir=str(tmp_path / 'work'))
    def f():
        WriteTable(publish_dirs=[str(out)])(Channel.values('a')).subscribe(on_next=results.append)

    run(f())
    [outputs] = results
    assert outputs['table'].name == 'a.txt'
    assert outputs['log'] is None
    assert (out / 'a.txt').read_text() == "a\n"

    # a cached run publishes its outputs again
    (out / 'a.txt').unlink()
    report = run(f())
    assert report.num_cached == 1
    assert (out / 'a.txt').is_file()


def test_tool_task_missing_output(tmp_path):
    @flow(workdir=str(tmp_path))
    def f():
        Silent()(Channel.values('a'))

    with pytest.raises(MissingOutputError):
        run(f())


def test_tool_task_exit_codes(tmp_path):
    results = []

    @flow(workdir=str(tmp_path))
    def tolerated():
        Probe()(Channel.values(3)).subscribe(on_next=results.append)

    run(tolerated())
    assert results[0]['version'].read_text() == "v1\n"

    @flow(workdir=str(tmp_path))
    def failed():
        Probe()(Channel.values(4))

    with pytest.raises(ShellTaskExecuteError) as exc_info:
        run(failed())
    assert exc_info.value.returncode == 4
    assert 'probe failed' in exc_info.value.stderr


def test_greedy_solver_keeps_submission_order():
    solver = GreedySolver(fits=lambda items: sum(items) <= 5)
    assert solver.solve([2, 2, 3, 1]) == [True, True, False, True]


def test_resource_manager_admission():
    async def main():
        flow_node = SimpleNamespace(config_dict={'id': 'flow', 'resources_limit': {'cpu': 4}})
        big = SimpleNamespace(config_dict={'id': 'big', 'resources_limit': {}}, resources={'cpu': 3})
        small = SimpleNamespace(config_dict={'id': 'small', 'resources_limit': {'fork': 1}},
                                resources={'cpu': 1, 'fork': 1})
        manager = ResourceManager(flow_node)
        jobs = [Job(asyncio.sleep(0), data=node) for node in (big, big, small, small)]
        try:
            assert manager.select_jobs(jobs) == [True, False, True, False]
            manager.job_start(jobs[0])
            manager.job_start(jobs[2])
            assert manager.available['flow'] == {'cpu': 0}
            assert manager.select_jobs([jobs[1], jobs[3]]) == [False, False]
            manager.job_end(jobs[0])
            assert manager.select_jobs([jobs[1], jobs[3]]) == [True, False]
        finally:
            for job in jobs:
                job.cancel()

    asyncio.run(main())


def test_resource_limit_larger_than_flow_still_runs(tmp_path):
    results = []

    @task(cpu=8)
    def heavy(x: int) -> int:
        return x

    @flow(workdir=str(tmp_path), resources_limit={'cpu': 2})
    def f():
        heavy(Channel.values(1, 2)).subscribe(on_next=results.append)

    run(f())
    assert sorted(results) == [1, 2]
