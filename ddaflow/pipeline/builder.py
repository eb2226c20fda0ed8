"""
The DDA pipeline graph. Which nodes exist and how they are connected only depends on the PipelineConfig, decided
once while the flow is built:

    mzmls ─┬─ search ── percolator ── threshold check ── psm table ─┬─ peptide table ─┬─ merge ── normalize ── deqms ── feature qc ─┐
           ├─ spectra lookup ─┐                                     │                 └─ fdr competition ┘                            ├─ qc report
           ├─ ms1 quant ──────┼── quant lookup ─────────────────────┘                                                                 │
           └─ isobaric quant ─┘                                     └─ psm qc ──────────────────────────────────────────────────────┘

A disabled node is left out of the graph and recorded in `skipped`, its consumers are wired to the channel it
would have transformed.
"""
from copy import copy
from functools import partial
from pathlib import Path
from typing import Mapping, Dict, Callable, Union, Tuple

import ddaflow
from ddaflow.core.base import ComponentCallError, root_cause
from ddaflow.core.channel import Channel, ChannelBase, Output
from ddaflow.core.engine.flow_runner import FlowRunner
from ddaflow.core.flow import Flow
from ddaflow.core.models import RunReport
from ddaflow.core.record import sort_records, sort_grouped
from ddaflow.core.task import BaseTask
from ddaflow.core.utility.target import File
from ddaflow.pipeline.checks import ThresholdCheck, ScoreCheck
from ddaflow.pipeline.config import PipelineConfig
from ddaflow.pipeline.fdr import compete, per_acctype
from ddaflow.pipeline.inputs import read_mzmldef, read_fasta, read_lookup, set_names, qc_partitions
from ddaflow.pipeline.records import Percolated, Psms, Quant, QcInput, QcArtifact, TARGET, DECOY, NOPLATES
from ddaflow.pipeline.tools import default_tools

NODE_WHEN: Dict[str, Callable[[PipelineConfig], bool]] = {
    'isobaric_quant': lambda p: p.quant and p.isobaric is not None,
    'ms1_quant': lambda p: p.quant,
    'spectra_lookup': lambda p: p.quantlookup is None,
    'quant_lookup': lambda p: p.quant,
    'pi_annotation': lambda p: p.hirief,
    'score_check': lambda p: bool(p.acctypes),
    'fdr_competition': lambda p: bool(p.acctypes),
    'normalize': lambda p: p.normalize,
    'deqms': lambda p: p.deqms,
}

# sub directory of outdir the outputs of a node are published to
PUBLISH_DIRS = {
    'versions': '',
    'psm_table': 'psms',
    'pi_annotation': 'psms',
    'merge_sets': '',
    'normalize': '',
    'deqms': '',
    'psm_qc': 'qc',
    'feature_qc': 'qc',
    'qc_report': 'qc',
}


def node_templates() -> Dict[str, BaseTask]:
    return {
        **default_tools(),
        'threshold_check': ThresholdCheck(),
        'score_check': ScoreCheck(),
    }


def with_ms1(ms1: Quant, isobaric: Quant) -> Quant:
    return ms1._replace(isobaric=isobaric.isobaric)


def split_psms(params: PipelineConfig, percolated: Percolated) -> Tuple[Psms, Psms]:
    """The target and decoy PSMs of a set, carrying the denominators of the set."""
    denoms = params.denominators_for(percolated.setname)
    return (Psms(percolated.setname, TARGET, percolated.target, denoms),
            Psms(percolated.setname, DECOY, percolated.decoy, denoms))


def with_warnings(artifacts: Tuple[QcArtifact, ...]) -> Tuple[Tuple[QcArtifact, ...], Tuple[Tuple[str, ...], ...]]:
    """The QC artifacts and the warnings met until all of them were built, as (kind, set, key, message) rows."""
    rows = {(w.kind, w.setname or '', w.key or '', w.message) for w in ddaflow.context.warnings}
    return artifacts, tuple(sorted(rows))


class DdaPipeline(Flow):
    """DDA proteomics pipeline with target/decoy FDR control of peptides, proteins, genes and symbols.

    Parameters
    ----------
    params
        the run configuration, also exposed to every node as `context.params`
    tools
        node name -> task, replaces the default node, used to run the graph with other tools
    """

    def __init__(self, params: PipelineConfig, tools: Mapping[str, BaseTask] = None, **kwargs):
        kwargs.setdefault('name', 'dda_pipeline')
        kwargs.setdefault('workdir', str(Path(params.workdir).expanduser().resolve()))
        kwargs.setdefault('resources_limit', {'cpu': params.cpus, 'memory': params.memory})
        super().__init__(**kwargs)
        self.params = params
        self.tools = {**node_templates(), **(tools or {})}
        self.outdir = Path(params.outdir).expanduser().resolve()
        self.setnames: Tuple[str, ...] = ()
        self.partitions: Tuple[str, ...] = ()

    def initialize_context(self):
        super().initialize_context()
        self.context['params'] = self.params

    def enabled(self, name: str) -> bool:
        when = NODE_WHEN.get(name)
        return when is None or bool(when(self.params))

    def node(self, name: str) -> BaseTask:
        """A fresh template of the node `name` with its pipeline name, condition and publish directory."""
        template = copy(self.tools[name])
        template.rest_kwargs['name'] = name
        if name in PUBLISH_DIRS:
            template.rest_kwargs.setdefault('publish_dirs', [str(self.outdir / PUBLISH_DIRS[name])])
        template.rest_kwargs.setdefault('executor_type', self.params.executor)
        if template.when is None and name in NODE_WHEN:
            template.when = NODE_WHEN[name]
        return template

    def call(self, name: str, *inputs: Union[ChannelBase, Callable[[], ChannelBase]]) -> Output:
        """Call the node `name`. Inputs are channels or callables building them, the inputs of a disabled node are
        never built.
        """
        node = self.node(name)
        if not self.enabled(name):
            ddaflow.context.logger.debug(f"Skip building {name}, it is disabled by the pipeline options.")
            ddaflow.context.top_flow.skipped.append(name)
            return node.empty_output()
        return node(*(ch if isinstance(ch, ChannelBase) else ch() for ch in inputs))

    def passthrough(self, name: str, ch: Channel) -> Channel:
        out = self.call(name, ch)
        return out if self.enabled(name) else ch

    def fan_out(self, ch: Channel, *names: str) -> Dict[str, Channel]:
        """One outlet per enabled consumer, a single consumer gets the channel itself."""
        names = [name for name in names if self.enabled(name)]
        if len(names) == 1:
            return {names[0]: ch}
        return dict(zip(names, ch.into(*names)))

    def run(self) -> Channel:
        p = self.params
        mzmls = read_mzmldef(p.mzmldef, p.fractions)
        self.setnames = set_names(mzmls)
        self.partitions = qc_partitions(mzmls) if p.fractions else (NOPLATES,)
        # a set without denominators fails before anything runs
        for setname in self.setnames:
            p.denominators_for(setname)
        ddaflow.context.logger.info(f"Building the pipeline of sets {', '.join(self.setnames)}, accession types: "
                                    f"{', '.join(a.value for a in p.acctypes) or 'peptides only'}")

        versions = self.call('versions')
        databases = self.call('decoy_db', Channel.value(read_fasta(p.tdb)))
        dbs = self.fan_out(databases, 'search', 'fdr_competition')
        mz = self.fan_out(Channel.values(*mzmls), 'search', 'spectra_lookup', 'ms1_quant', 'isobaric_quant')

        # spectra and quant lookup
        spectra = self.call('spectra_lookup', lambda: mz['spectra_lookup'].collect())
        ms1 = self.call('ms1_quant', lambda: mz['ms1_quant'])
        isobaric = self.call('isobaric_quant', lambda: mz['isobaric_quant'])
        quants = ms1.join(isobaric, by='sample', into=with_ms1) if self.enabled('isobaric_quant') else ms1
        if p.quantlookup is not None:
            lookup = Channel.value(read_lookup(p.quantlookup))
        elif p.noquant:
            lookup = spectra
        self_lookup = self.call('quant_lookup', lambda: spectra,
                                lambda: quants.collect().map(by=lambda q: sort_records(q, 'sample')))
        if p.quant:
            lookup = self_lookup

        # identification
        search_mzmls, search_dbs = mz['search'].cross(dbs['search']).split(num=2)
        mods = Channel.value(File(p.mods) if p.mods else None)
        searches = self.call('search', search_mzmls, search_dbs, mods)
        set_searches = searches.group_tuple(by='setname').map(by=lambda s: sort_grouped(s, 'sample'))
        percolated = self.call('percolator', set_searches)
        psms = self.call('threshold_check', percolated.map(by=partial(split_psms, p)).flatten())

        # PSM and peptide tables
        table_psms, table_lookup = psms.cross(lookup).split(num=2)
        psmtables = self.call('psm_table', table_psms, table_lookup)
        psmtables = self.passthrough('pi_annotation', psmtables)
        psmtables, qc_psmtables = psmtables.into('peptide_table', 'psm_qc')
        peptides = self.call('peptide_table', psmtables)

        # FDR controlled protein, gene and symbol tables
        if p.acctypes:
            peptides, fdr_peptides = peptides.into('merge_sets', 'fdr_competition')
            tables = per_acctype(fdr_peptides, [a.value for a in p.acctypes])
            proteins = compete(tables, dbs['fdr_competition'], self.node('score_check'), self.node('fdr_competition'))
            targets = peptides.filter(by=lambda t: t.td == TARGET).mix(proteins)
        else:
            self.call('score_check')
            self.call('fdr_competition')
            targets = peptides.filter(by=lambda t: t.td == TARGET)

        acctype_tables = targets.group_tuple(by='acctype').map(by=lambda t: sort_grouped(t, 'setname'))
        merged = self.call('merge_sets', acctype_tables)
        merged = self.passthrough('normalize', merged)
        merged = self.passthrough('deqms', merged)

        # QC
        all_psmtables = qc_psmtables.collect().map(by=lambda t: sort_records(t, ('setname', 'td')))
        qc_inputs = Channel.values(*self.partitions).cross(all_psmtables, into=QcInput)
        psm_qc = self.call('psm_qc', qc_inputs)
        feature_qc = self.call('feature_qc', merged)
        artifacts = psm_qc.mix(feature_qc).collect().map(by=lambda a: sort_records(a, 'name'))
        artifacts, run_warnings = artifacts.map(by=with_warnings).split(num=2)
        return self.call('qc_report', artifacts, versions, run_warnings)


def run_pipeline(params: PipelineConfig, tools: Mapping[str, BaseTask] = None, context: dict = None) -> RunReport:
    """Check the inputs, build and run the pipeline. The warnings collected during the run are written into
    `<outdir>/qc/warnings.txt`, also when the run fails.
    """
    params.check_inputs()
    with ddaflow.context(context or {}) as ctx:
        try:
            pipeline = DdaPipeline(params, tools=tools)()
        except ComponentCallError as exc:
            raise root_cause(exc)
        merged_context = ctx.to_dict()

    runner = FlowRunner(pipeline)
    try:
        runner.run(context=merged_context)
    finally:
        if runner.report is not None:
            runner.write_warnings(Path(params.outdir).expanduser().resolve() / 'qc' / 'warnings.txt')
    return runner.report
