from shlex import quote
from typing import Dict, Any

import pytest

from ddaflow.api import *
from ddaflow.pipeline.tools import default_tools, Percolator, PeptideTable

PSM_HEADER = 'SpecID\tPeptide\tPSM q-value\tpeptide q-value'
PEPTIDE_HEADER = 'Peptide sequence\tpercolator svm-score\tMSGFScore\tq-value'


class Recorded(ToolTask):
    """Write every declared output instead of invoking the tool. The composed command line is kept in
    `.command.sh` of the run directory.
    """

    def fake_output(self, name: str, inputs: Dict[str, Any]) -> str:
        return f"{self.config_dict['name']}\t{name}\n"

    def compose_command(self, **inputs):
        cmd, declared = super().compose_command(**inputs)
        lines = [f"printf '%s\\n' {quote(cmd)} > .command.sh"]
        for name, pattern in declared.items():
            path = pattern.replace('*', 'plots')
            lines.append(f"printf '%s' {quote(self.fake_output(name, inputs))} > {quote(path)}")
        return '\n'.join(lines), declared


class FakePercolator(Recorded, Percolator):
    """Sets listed in `empty_sets` have no target PSM passing the thresholds."""

    def fake_output(self, name, inputs):
        setname = inputs['searches'].setname
        rows = [f"{sample}_scan1\tPEPTIDEK\t0.001\t0.002" for sample in inputs['searches'].sample]
        if name == 'target' and setname in self.config_dict.get('empty_sets', ()):
            rows = []
        return '\n'.join([PSM_HEADER] + rows) + '\n'


class FakePeptideTable(Recorded, PeptideTable):
    """The percolator score of sets listed in `zero_score_sets` is all zero."""

    def fake_output(self, name, inputs):
        psmtable = inputs['psmtable']
        zero = psmtable.setname in self.config_dict.get('zero_score_sets', ())
        rows = [f"PEPTIDE{i}K\t{0 if zero else 1.5 + i}\t{100 + i}\t0.001" for i in range(3)]
        return '\n'.join([PEPTIDE_HEADER] + rows) + '\n'


FAKES = {
    'percolator': FakePercolator,
    'peptide_table': FakePeptideTable,
}


def fake_tools(**configs) -> Dict[str, ToolTask]:
    """Every tool node replaced by one writing its declared outputs, `configs` maps node names to the config
    of the fake node.
    """
    tools = {}
    for name, tool in default_tools().items():
        cls = FAKES.get(name)
        if cls is None:
            tool_cls = type(tool)
            cls = type(tool_cls)(f"Fake{tool_cls.__name__}", (Recorded, tool_cls), {})
        tools[name] = cls(**configs.get(name, {}))
    return tools


@pytest.fixture
def inputs(tmp_path):
    """Two sets A and B of two mzML files each, a fasta database and the mzML definition."""
    data = tmp_path / 'data'
    data.mkdir()
    lines = []
    for setname in ('A', 'B'):
        for i in (1, 2):
            mzml = data / f"{setname}_{i}.mzML"
            mzml.write_text(f"<mzML>{setname}{i}</mzML>\n")
            lines.append(f"{mzml.name}\t{setname}\tplate{i}\t{i}")
    mzmldef = data / 'mzmldef.txt'
    mzmldef.write_text('\n'.join(lines) + '\n')
    tdb = data / 'target.fa'
    tdb.write_text(">P1 GENE=G1\nMPEPTIDEKRPEPTIDER\n>P2 GENE=G2\nMKKPEPTIDEQR\n")
    return {
        'mzmldef': str(mzmldef),
        'tdb': str(tdb),
        'outdir': str(tmp_path / 'results'),
        'workdir': str(tmp_path / 'work'),
    }


@pytest.fixture
def make_params(inputs):
    def make(**options) -> PipelineConfig:
        return PipelineConfig.from_mapping(inputs, **options)

    return make
