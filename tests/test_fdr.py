import pytest

from ddaflow.api import *
from ddaflow.pipeline.fdr import compete, per_acctype

from conftest import PEPTIDE_HEADER


@task
def competed(competition: Competition, databases) -> Competition:
    return competition


def write_table(path, scores) -> File:
    rows = [f"PEPTIDE{i}K\t{score}\t{100 + i}\t0.001" for i, score in enumerate(scores)]
    path.write_text('\n'.join([PEPTIDE_HEADER] + rows) + '\n')
    return File(path)


def feature_table(tmp_path, setname, td, scores=(1.5, 2.5), acctype='proteins') -> FeatureTable:
    table = write_table(tmp_path / f"{setname}_{acctype}_{td}.txt", scores)
    return FeatureTable(setname=setname, acctype=acctype, td=td, table=table)


def run_competition(tmp_path, tables):
    results = []

    @flow(workdir=str(tmp_path / 'work'))
    def f():
        compete(Channel.values(*tables), Channel.values('databases'), ScoreCheck(), competed) \
            .subscribe(on_next=results.append)

    report = run(f())
    return results, report


def test_only_target_decoy_pairs_compete(tmp_path):
    tables = [
        feature_table(tmp_path, 'A', 'decoy'),
        feature_table(tmp_path, 'B', 'target'),
        feature_table(tmp_path, 'A', 'target'),
        feature_table(tmp_path, 'C', 'target'),
        feature_table(tmp_path, 'C', 'target', acctype='genes'),
        feature_table(tmp_path, 'C', 'decoy', acctype='genes'),
        feature_table(tmp_path, 'D', 'target'),
        feature_table(tmp_path, 'D', 'target', scores=(3.5,)),
    ]
    results, report = run_competition(tmp_path, tables)

    assert sorted((c.setname, c.acctype) for c in results) == [('A', 'proteins'), ('C', 'genes')]
    for competition in results:
        assert competition.target.name.endswith('_target.txt')
        assert competition.decoy.name.endswith('_decoy.txt')
        assert competition.score == 'percolator svm-score'
    unpaired = sorted((w.setname, w.key) for w in report.warnings if w.kind == 'PairingWarning')
    assert unpaired == [('B', 'proteins'), ('C', 'proteins'), ('D', 'proteins')]


def test_uninformative_score_falls_back(tmp_path):
    tables = [
        feature_table(tmp_path, 'A', 'target', scores=(0, 0)),
        feature_table(tmp_path, 'A', 'decoy'),
    ]
    [competition], report = run_competition(tmp_path, tables)

    assert competition.score == 'MSGFScore'
    [warning] = competition.warnings
    assert warning.kind == 'ScoreFallbackWarning'
    assert warning.setname == 'A'
    assert 'target' in warning.message
    assert [w.kind for w in report.warnings] == ['ScoreFallbackWarning']


def test_per_acctype_relabels_peptide_tables(tmp_path):
    results = []
    peptides = [feature_table(tmp_path, 'A', td, acctype='peptides') for td in TD]

    @flow
    def f():
        per_acctype(Channel.values(*peptides), ['proteins', 'genes']).subscribe(on_next=results.append)

    run(f())
    assert [(t.acctype, t.td) for t in results] == [
        ('proteins', 'target'), ('genes', 'target'), ('proteins', 'decoy'), ('genes', 'decoy')]
    assert all(t.table == peptides[0].table for t in results[:2])


def test_threshold_check(tmp_path, make_params):
    empty = tmp_path / 'empty.tsv'
    empty.write_text('SpecID\tPeptide\n')
    params = make_params(psmconflvl=0.05, pepconflvl=0.02)

    @flow(workdir=str(tmp_path / 'work'))
    def f():
        ThresholdCheck()(Channel.values(Psms('A', 'target', File(empty))))

    with ddaflow.context({'params': params}):
        built = f()
    with pytest.raises(ThresholdEmptyError) as exc_info:
        run(built)
    message = str(exc_info.value)
    assert '`A`' in message and 'psmconflvl=0.05' in message and 'pepconflvl=0.02' in message
