"""
The external tool nodes of the DDA pipeline. Each node composes one command line from its resolved input
records and the PipelineConfig, declares the files the command writes and builds the record it emits. What the
tools compute is their own business, the pipeline only relies on their inputs, outputs and exit status.
"""
from shlex import quote
from typing import Tuple, Dict, Any

from ddaflow.core.utility.target import File
from ddaflow.pipeline.config import (
    exhaustive_map, MSGF_INSTRUMENT, MSGF_ACTIVATION, MSGF_ENZYME, MSGF_PROTOCOL, ISOBARIC_ANALYZER_TYPE, AccType
)
from ddaflow.pipeline.records import (
    Mzml, Databases, Quant, Lookup, Search, Percolated, Psms, PsmTable, FeatureTable, Competition, MergedTable,
    QcInput, QcArtifact, TARGET, flat_files
)
from ddaflow.tasks.shell import ToolTask, tool_option

ISOBARIC_COLUMN_PATTERN = 'plex'
MS1_COLUMN_PATTERN = 'area'


def files_arg(files) -> str:
    return ' '.join(quote(str(f)) for f in files)


class SoftwareVersions(ToolTask):
    """Versions of every tool, a missing tool is reported, not fatal."""
    default_config = {
        'ok_exit_codes': list(range(256)),
        'cpu': 1,
        'memory': 0.5,
    }
    outputs = {'versions': 'software_versions.txt'}
    TOOLS = {
        'msgf_plus': 'msgf_plus | head -n1',
        'percolator': 'percolator -h 2>&1 | head -n1',
        'msstitch': 'msstitch --version',
        'IsobaricAnalyzer': 'IsobaricAnalyzer 2>&1 | grep Version',
        'dinosaur': 'dinosaur 2>&1 | head -n1',
        'R': 'R --version | head -n1',
    }

    def command(self) -> str:
        lines = [': > software_versions.txt']
        for name, probe in self.TOOLS.items():
            lines.append(f"echo {name}: $({probe} || echo unavailable) >> software_versions.txt")
        return '\n'.join(lines)

    def emit(self, outputs: Dict[str, Any], **inputs) -> File:
        return outputs['versions']


class DecoyDatabase(ToolTask):
    """Reversed tryptic decoy of the target database, plus the concatenated target-decoy database searched."""
    outputs = {
        'target': 'target.fa',
        'decoy': 'decoy.fa',
        'concat': 'td_concat.fa',
    }

    def command(self, tdb: File) -> str:
        return f"cp {quote(str(tdb))} target.fa\n" \
               f"msstitch makedecoy -i target.fa -o decoy.fa --scramble tryp_rev --ignore-target-hits\n" \
               f"cat target.fa decoy.fa > td_concat.fa"

    def emit(self, outputs: Dict[str, Any], **inputs) -> Databases:
        return Databases(**outputs)


class IsobaricQuant(ToolTask):
    """Reporter ion intensities of one mzML."""
    param_names = ('isobaric', 'activation')
    outputs = {'isobaric': '{mzml.sample}.consensusXML'}

    def command(self, mzml: Mzml) -> str:
        plex = exhaustive_map(ISOBARIC_ANALYZER_TYPE, self.params.isobaric, 'isobaric')
        activation = '' if self.params.activation.value == 'auto' else self.params.activation.value.upper()
        return f"IsobaricAnalyzer -type {plex} -in {quote(str(mzml.mzml))} -out {quote(mzml.sample)}.consensusXML " \
               f"-extraction:select_activation '{activation}' -extraction:reporter_mass_shift 0.002 " \
               f"-threads {self.config_dict['cpu']}"

    def emit(self, outputs: Dict[str, Any], mzml: Mzml = None, **inputs) -> Quant:
        return Quant(setname=mzml.setname, sample=mzml.sample, isobaric=outputs['isobaric'])


class Ms1Quant(ToolTask):
    """MS1 precursor features of one mzML."""
    default_config = {
        'cpu': 2,
        'memory': 4,
    }
    outputs = {'ms1': '{mzml.sample}.features.tsv'}

    def command(self, mzml: Mzml) -> str:
        return f"dinosaur --concurrency={self.config_dict['cpu']} --outName={quote(mzml.sample)} " \
               f"{quote(str(mzml.mzml))}"

    def emit(self, outputs: Dict[str, Any], mzml: Mzml = None, **inputs) -> Quant:
        return Quant(setname=mzml.setname, sample=mzml.sample, ms1=outputs['ms1'])


class SpectraLookup(ToolTask):
    """Spectra of every mzML with their set, plate and fraction."""
    outputs = {'db': 'mslookup_db.sqlite'}

    def command(self, mzmls: Tuple[Mzml, ...]) -> str:
        return f"msstitch storespectra --spectra {files_arg(m.mzml for m in mzmls)} " \
               f"--setnames {' '.join(quote(m.setname) for m in mzmls)} -o mslookup_db.sqlite"

    def emit(self, outputs: Dict[str, Any], **inputs) -> Lookup:
        return Lookup(db=outputs['db'], quant=False)


class QuantLookup(ToolTask):
    """Add the MS1 and isobaric quantification to a copy of the spectra lookup."""
    outputs = {'db': 'quant_lookup.sqlite'}

    def command(self, lookup: Lookup, quants: Tuple[Quant, ...]) -> str:
        spectra = [q.sample for q in quants]
        ms1 = [q.ms1 for q in quants if q.ms1 is not None]
        isobaric = [q.isobaric for q in quants if q.isobaric is not None]
        cmd = f"cp {quote(str(lookup.db))} quant_lookup.sqlite\n" \
              f"msstitch storequant --dbfile quant_lookup.sqlite --spectra {' '.join(map(quote, spectra))}"
        if ms1:
            cmd += f" --dinosaur {files_arg(ms1)}"
        if isobaric:
            cmd += f" --isobaric {files_arg(isobaric)}"
        return cmd

    def emit(self, outputs: Dict[str, Any], **inputs) -> Lookup:
        return Lookup(db=outputs['db'], quant=True)


class MsgfSearch(ToolTask):
    """Search one mzML against the concatenated target-decoy database."""
    default_config = {
        'cpu': 4,
        'memory': 8,
    }
    param_names = ('instrument', 'activation', 'enzyme', 'isobaric', 'mincharge', 'maxcharge', 'minpeplen',
                   'maxpeplen', 'maxmiscleav')
    outputs = {'mzid': '{mzml.sample}.mzid'}

    def command(self, mzml: Mzml, databases: Databases, mods=None) -> str:
        p = self.params
        return f"msgf_plus -Xmx{int(self.config_dict['memory'])}G -d {quote(str(databases.concat))} " \
               f"-s {quote(str(mzml.mzml))} -o {quote(mzml.sample)}.mzid -thread {self.config_dict['cpu']} " \
               f"-tda 0 -t 10.0ppm -ti -1,2 " \
               f"-m {exhaustive_map(MSGF_ACTIVATION, p.activation, 'activation')} " \
               f"-inst {exhaustive_map(MSGF_INSTRUMENT, p.instrument, 'instrument')} " \
               f"-e {exhaustive_map(MSGF_ENZYME, p.enzyme, 'enzyme')} " \
               f"-protocol {exhaustive_map(MSGF_PROTOCOL, p.isobaric, 'isobaric')} " \
               f"-ntt 2 -minLength {p.minpeplen} -maxLength {p.maxpeplen} " \
               f"-minCharge {p.mincharge} -maxCharge {p.maxcharge} -maxMissedCleavages {p.maxmiscleav} " \
               f"-n 1 -addFeatures 1 {tool_option('-mod', mods)}"

    def emit(self, outputs: Dict[str, Any], mzml: Mzml = None, **inputs) -> Search:
        return Search(setname=mzml.setname, sample=mzml.sample, plate=mzml.plate, fraction=mzml.fraction,
                      mzid=outputs['mzid'])


class Percolator(ToolTask):
    """Rescore the searches of a set together, then keep the target and decoy PSMs passing both the PSM and the
    peptide q-value threshold.
    """
    default_config = {
        'cpu': 2,
        'memory': 4,
    }
    param_names = ('enzyme', 'psmconflvl', 'pepconflvl')
    outputs = {
        'target': '{searches.setname}_target_psms.tsv',
        'decoy': '{searches.setname}_decoy_psms.tsv',
    }

    def command(self, searches: Search) -> str:
        p = self.params
        setname = quote(searches.setname)
        lines = [
            f"msgf2pin -o percoin.tsv -e {p.enzyme.value} -P decoy_ {files_arg(searches.mzid)}",
            f"percolator -j percoin.tsv -X perco.xml -N 500000 --decoy-xml-output "
            f"--num-threads {self.config_dict['cpu']}",
        ]
        for td in ('target', 'decoy'):
            decoy_flag = ' --decoy' if td == 'decoy' else ''
            lines += [
                f"msstitch perco2psm --perco perco.xml -i {files_arg(searches.mzid)} -o {td}_perco.tsv{decoy_flag}",
                f"msstitch conffilt -i {td}_perco.tsv -o {td}_psmfilt.tsv --confidence-better lower "
                f"--confidence-lvl {p.psmconflvl} --confcolpattern 'PSM q-value'",
                f"msstitch conffilt -i {td}_psmfilt.tsv -o {setname}_{td}_psms.tsv --confidence-better lower "
                f"--confidence-lvl {p.pepconflvl} --confcolpattern 'peptide q-value'",
            ]
        return '\n'.join(lines)

    def emit(self, outputs: Dict[str, Any], searches: Search = None, **inputs) -> Percolated:
        return Percolated(setname=searches.setname, target=outputs['target'], decoy=outputs['decoy'])


class PsmTableBuild(ToolTask):
    """The PSM table of one set and arm, annotated with the spectra/quant lookup. The lookup is copied, inputs
    are never written to.
    """
    param_names = ('isobaric',)
    outputs = {'table': '{psms.setname}_{psms.td}_psmtable.txt'}

    def command(self, psms: Psms, lookup: Lookup) -> str:
        table = quote(f"{psms.setname}_{psms.td}_psmtable.txt")
        cmd = f"cp {quote(str(lookup.db))} psm_lookup.sqlite\n" \
              f"msstitch psmtable -i {quote(str(psms.psms))} --dbfile psm_lookup.sqlite -o {table} " \
              f"--addbioset --addmiscleav --spectracol 1"
        if psms.td == TARGET:
            if lookup.quant:
                cmd += " --ms1quant"
            if self.params.isobaric is not None and lookup.quant:
                cmd += " --isobaric"
        return cmd

    def emit(self, outputs: Dict[str, Any], psms: Psms = None, **inputs) -> PsmTable:
        return PsmTable(setname=psms.setname, td=psms.td, table=outputs['table'], denoms=psms.denoms)


class PiAnnotation(ToolTask):
    """Isoelectric point deviation of the peptides of a HiRIEF fractionated set."""
    outputs = {'table': '{psmtable.setname}_{psmtable.td}_psmtable.txt'}

    def command(self, psmtable: PsmTable) -> str:
        table = quote(f"{psmtable.setname}_{psmtable.td}_psmtable.txt")
        return f"peptide_pi_annotator.py -i {quote(str(psmtable.table))} -o {table} --stripcolpattern Strip " \
               f"--fraccolpattern Fraction --ignoremods '*'"

    def emit(self, outputs: Dict[str, Any], psmtable: PsmTable = None, **inputs) -> PsmTable:
        return psmtable._replace(table=outputs['table'])


class PeptideTable(ToolTask):
    """Peptide table of one set and arm."""
    param_names = ('isobaric',)
    outputs = {'table': '{psmtable.setname}_{psmtable.td}_peptides.txt'}

    def command(self, psmtable: PsmTable) -> str:
        table = quote(f"{psmtable.setname}_{psmtable.td}_peptides.txt")
        cmd = f"msstitch peptides -i {quote(str(psmtable.table))} -o {table} --spectracol 1 " \
              f"--scorecolpattern svm --modelqvals --ms1quantcolpattern {MS1_COLUMN_PATTERN}"
        if self.params.isobaric is not None and psmtable.td == TARGET:
            cmd += f" --isobquantcolpattern {ISOBARIC_COLUMN_PATTERN} --minint 0.1 --logisoquant"
            if psmtable.denoms:
                cmd += f" --denompatterns {' '.join(psmtable.denoms)}"
        return cmd

    def emit(self, outputs: Dict[str, Any], psmtable: PsmTable = None, **inputs) -> FeatureTable:
        return FeatureTable(setname=psmtable.setname, acctype=AccType.peptides.value, td=psmtable.td,
                            table=outputs['table'], denoms=psmtable.denoms)


class FdrCompetition(ToolTask):
    """Target-decoy competition of one set and accession type. Proteins are ranked by their best peptide,
    genes and symbols use the picked FDR which resolves shared peptides with the target and decoy databases.
    """
    param_names = ('isobaric',)
    outputs = {'table': '{competition.setname}_{competition.acctype}.txt'}

    def command(self, competition: Competition, databases: Databases) -> str:
        table = quote(f"{competition.setname}_{competition.acctype}.txt")
        cmd = f"msstitch proteins -i {quote(str(competition.target))} --decoyfn {quote(str(competition.decoy))} " \
              f"-o {table} --scorecolpattern {quote(competition.score)} --logscore " \
              f"--ms1quant --psmtable {quote(str(competition.target))}"
        if competition.acctype == AccType.proteins.value:
            cmd += " --fdrtype bestpeptide"
        else:
            cmd += f" --fdrtype picked --targetfasta {quote(str(databases.target))} " \
                   f"--decoyfasta {quote(str(databases.decoy))} --featuretype {competition.acctype}"
        if self.params.isobaric is not None:
            cmd += f" --isobquantcolpattern {ISOBARIC_COLUMN_PATTERN} --minint 0.1 --logisoquant"
            if competition.denoms:
                cmd += f" --denompatterns {' '.join(competition.denoms)}"
        return cmd

    def emit(self, outputs: Dict[str, Any], competition: Competition = None, **inputs) -> FeatureTable:
        return FeatureTable(setname=competition.setname, acctype=competition.acctype, td=TARGET,
                            table=outputs['table'], denoms=competition.denoms, warnings=competition.warnings)


class MergeSets(ToolTask):
    """One table of every set for an accession type."""
    param_names = ('isobaric',)
    outputs = {'table': '{tables.acctype}_table.txt'}

    def command(self, tables: FeatureTable) -> str:
        fdr_col = "'^q-value$'" if tables.acctype == AccType.peptides.value else "'^q-value$' --flrcolpattern"
        cmd = f"msstitch merge -i {files_arg(tables.table)} --setnames {' '.join(map(quote, tables.setname))} " \
              f"-o {quote(tables.acctype)}_table.txt --fdrcolpattern {fdr_col} --mergecutoff 0.01"
        if self.params.isobaric is not None:
            cmd += f" --isobquantcolpattern {ISOBARIC_COLUMN_PATTERN}"
        return cmd

    def emit(self, outputs: Dict[str, Any], tables: FeatureTable = None, **inputs) -> MergedTable:
        return MergedTable(acctype=tables.acctype, table=outputs['table'], setnames=tuple(tables.setname))


class Normalize(ToolTask):
    """Median centering of the isobaric channels of a merged table."""
    outputs = {'table': '{merged.acctype}_table.txt'}

    def command(self, merged: MergedTable) -> str:
        return f"normalize_isobaric.R {quote(str(merged.table))} {quote(merged.acctype)}_table.txt " \
               f"{ISOBARIC_COLUMN_PATTERN}"

    def emit(self, outputs: Dict[str, Any], merged: MergedTable = None, **inputs) -> MergedTable:
        return merged._replace(table=outputs['table'])


class Deqms(ToolTask):
    """Differential expression statistics added to a merged table."""
    default_config = {
        'memory': 4,
    }
    outputs = {'table': '{merged.acctype}_table.txt'}

    def command(self, merged: MergedTable) -> str:
        return f"deqms.R {quote(str(merged.table))} {quote(merged.acctype)}_table.txt {ISOBARIC_COLUMN_PATTERN}"

    def emit(self, outputs: Dict[str, Any], merged: MergedTable = None, **inputs) -> MergedTable:
        return merged._replace(table=outputs['table'])


class PsmQc(ToolTask):
    """PSM plots of one QC partition, a plate or `noplates`."""
    outputs = {'plots': '{qc.partition}_*.html'}

    def command(self, qc: QcInput) -> str:
        tables = [t.table for t in qc.tables if t.td == TARGET]
        return f"qc_psms.R --partition {quote(qc.partition)} --fractions {str(self.params.fractions).upper()} " \
               f"{files_arg(tables)}"

    def emit(self, outputs: Dict[str, Any], qc: QcInput = None, **inputs) -> QcArtifact:
        return QcArtifact(name=f"psms_{qc.partition}", files=tuple(flat_files(outputs['plots'])))


class FeatureQc(ToolTask):
    """Plots of a merged feature table."""
    outputs = {'plots': '{merged.acctype}_*.html'}

    def command(self, merged: MergedTable) -> str:
        return f"qc_features.R --acctype {quote(merged.acctype)} --sets {len(merged.setnames)} " \
               f"{quote(str(merged.table))}"

    def emit(self, outputs: Dict[str, Any], merged: MergedTable = None, **inputs) -> QcArtifact:
        return QcArtifact(name=merged.acctype, files=tuple(flat_files(outputs['plots'])))


class QcReport(ToolTask):
    """Collect every QC artifact, the software versions and the warnings of the run into one report."""
    outputs = {'report': 'qc_report.html'}
    WARNINGS_HEADER = ('kind', 'set', 'key', 'message')

    def command(self, artifacts: Tuple[QcArtifact, ...], versions: File,
                warnings: Tuple[Tuple[str, ...], ...] = ()) -> str:
        files = [f for artifact in artifacts for f in flat_files(artifact.files)]
        rows = [self.WARNINGS_HEADER] + [tuple(' '.join(str(v).split()) for v in row) for row in warnings]
        table = ''.join('\t'.join(row) + '\n' for row in rows)
        return f"printf '%s' {quote(table)} > run_warnings.tsv\n" \
               f"collect_qc.py --versions {quote(str(versions))} --warnings run_warnings.tsv -o qc_report.html " \
               f"{files_arg(files)}"

    def emit(self, outputs: Dict[str, Any], **inputs) -> File:
        return outputs['report']


def default_tools() -> Dict[str, ToolTask]:
    """The tool node templates of a pipeline, by node name."""
    return {
        'versions': SoftwareVersions(),
        'decoy_db': DecoyDatabase(),
        'isobaric_quant': IsobaricQuant(),
        'ms1_quant': Ms1Quant(),
        'spectra_lookup': SpectraLookup(),
        'quant_lookup': QuantLookup(),
        'search': MsgfSearch(),
        'percolator': Percolator(),
        'psm_table': PsmTableBuild(),
        'pi_annotation': PiAnnotation(),
        'peptide_table': PeptideTable(),
        'fdr_competition': FdrCompetition(),
        'merge_sets': MergeSets(),
        'normalize': Normalize(),
        'deqms': Deqms(),
        'psm_qc': PsmQc(),
        'feature_qc': FeatureQc(),
        'qc_report': QcReport(),
    }
