from pathlib import Path

import pytest

from ddaflow.api import *

from conftest import fake_tools


def executed(report: RunReport) -> list:
    return sorted(taskrun.task for taskrun in report.taskruns if taskrun.state == 'Success')


def test_two_sets(make_params):
    params = make_params()
    report = run_pipeline(params, tools=fake_tools())
    outdir = Path(params.outdir)

    for setname in ('A', 'B'):
        for td in TD:
            assert (outdir / 'psms' / f"{setname}_{td}_psmtable.txt").is_file()
    assert (outdir / 'peptides_table.txt').is_file()
    assert (outdir / 'proteins_table.txt').is_file()
    assert not (outdir / 'genes_table.txt').exists()
    assert (outdir / 'software_versions.txt').is_file()
    assert (outdir / 'qc' / 'qc_report.html').is_file()
    assert (outdir / 'qc' / 'noplates_plots.html').is_file()
    assert (outdir / 'qc' / 'warnings.txt').read_text() == ''

    assert report.warnings == []
    assert executed(report).count('search') == 4
    assert executed(report).count('percolator') == 2
    assert executed(report).count('fdr_competition') == 2
    assert executed(report).count('merge_sets') == 2


def test_resume_runs_nothing(make_params):
    params = make_params()
    run_pipeline(params, tools=fake_tools())
    report = run_pipeline(params, tools=fake_tools())
    assert report.num_executed == 0
    assert report.num_cached > 0


def test_genes_only_add_gene_runs(make_params):
    run_pipeline(make_params(), tools=fake_tools())
    outdir = Path(make_params().outdir)
    proteins = (outdir / 'proteins_table.txt').read_text()

    report = run_pipeline(make_params(genes=True), tools=fake_tools())
    assert (outdir / 'genes_table.txt').is_file()
    assert (outdir / 'proteins_table.txt').read_text() == proteins
    runs = executed(report)
    assert runs.count('score_check') == 2
    assert runs.count('fdr_competition') == 2
    assert runs.count('merge_sets') == 1
    assert set(runs) <= {'score_check', 'fdr_competition', 'merge_sets', 'feature_qc', 'qc_report'}


def test_only_peptides(make_params):
    params = make_params(onlypeptides=True)
    report = run_pipeline(params, tools=fake_tools())
    outdir = Path(params.outdir)
    assert (outdir / 'peptides_table.txt').is_file()
    assert not (outdir / 'proteins_table.txt').exists()
    assert (outdir / 'qc' / 'qc_report.html').is_file()
    runs = executed(report)
    assert 'score_check' not in runs and 'fdr_competition' not in runs
    assert runs.count('merge_sets') == 1


def test_graph_follows_the_config(make_params):
    flow_spec = DdaPipeline(make_params(noquant=True, onlypeptides=True), tools=fake_tools())().serialize()
    names = flow_spec.task_names()
    assert 'spectra_lookup' in names and 'peptide_table' in names
    for name in ('ms1_quant', 'isobaric_quant', 'quant_lookup', 'score_check', 'fdr_competition', 'normalize'):
        assert name not in names
        assert name in flow_spec.skipped

    flow_spec = DdaPipeline(make_params(isobaric='tmt10plex', hirief=True, denoms='A:126 B:126', normalize=True),
                            tools=fake_tools())().serialize()
    names = flow_spec.task_names()
    for name in ('isobaric_quant', 'ms1_quant', 'quant_lookup', 'pi_annotation', 'normalize', 'score_check'):
        assert name in names
    assert flow_spec.skipped == ['deqms']


def test_partitions(make_params):
    pipeline = DdaPipeline(make_params(), tools=fake_tools())()
    assert pipeline.setnames == ('A', 'B')
    assert pipeline.partitions == (NOPLATES,)

    pipeline = DdaPipeline(make_params(fractions=True), tools=fake_tools())()
    assert pipeline.partitions == ('plate1', 'plate2')


def test_isobaric_with_denominators(make_params):
    params = make_params(isobaric='tmt10plex', denoms='A:126 B:127N', genes=True)
    report = run_pipeline(params, tools=fake_tools())
    assert (Path(params.outdir) / 'genes_table.txt').is_file()
    assert executed(report).count('isobaric_quant') == 4
    assert executed(report).count('quant_lookup') == 1


def test_missing_denominator_fails_before_running(make_params):
    params = make_params(isobaric='tmt10plex', denoms='A:126')
    with pytest.raises(MissingDenominatorError) as exc_info:
        run_pipeline(params, tools=fake_tools())
    assert exc_info.value.setname == 'B'
    assert not Path(params.workdir).exists()


def test_empty_set_names_set_and_thresholds(make_params):
    params = make_params(psmconflvl=0.05, pepconflvl=0.02)
    tools = fake_tools(percolator={'empty_sets': ['B']})
    with pytest.raises(ThresholdEmptyError) as exc_info:
        run_pipeline(params, tools=tools)
    message = str(exc_info.value)
    assert '`B`' in message and '0.05' in message and '0.02' in message


def test_score_fallback_is_reported(make_params):
    params = make_params()
    report = run_pipeline(params, tools=fake_tools(peptide_table={'zero_score_sets': ['A']}))
    assert [(w.kind, w.setname) for w in report.warnings] == [('ScoreFallbackWarning', 'A')]
    assert 'ScoreFallbackWarning' in (Path(params.outdir) / 'qc' / 'warnings.txt').read_text()

    # the QC report gets the warnings as its input table
    [report_command] = [path for path in Path(params.workdir).rglob('.command.sh')
                        if path.parent.parent.name.startswith('qc_report-')]
    command = report_command.read_text()
    assert '--warnings run_warnings.tsv' in command
    assert 'ScoreFallbackWarning\tA\tproteins\t' in command


def test_quant_lookup_replaces_lookup_nodes(make_params, tmp_path):
    lookup = tmp_path / 'quant_lookup.sqlite'
    lookup.write_text('lookup')
    params = make_params(quantlookup=str(lookup))
    report = run_pipeline(params, tools=fake_tools())
    runs = executed(report)
    assert 'spectra_lookup' not in runs and 'quant_lookup' not in runs and 'ms1_quant' not in runs
    assert runs.count('psm_table') == 4
