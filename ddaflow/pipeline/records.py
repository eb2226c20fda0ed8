"""
Records flowing through the pipeline channels. Grouping and joining always use field names, a branch adding a
field never shifts the key of another one.
"""
from typing import NamedTuple, Optional, Tuple, List, Union, Any

from ddaflow.core.models import RunWarning
from ddaflow.core.utility.target import File

NOPLATES = 'noplates'
TARGET = 'target'
DECOY = 'decoy'
TD = (TARGET, DECOY)


class Mzml(NamedTuple):
    """One line of the mzML definition."""
    setname: str
    sample: str
    mzml: File
    plate: str = NOPLATES
    fraction: str = ''


class Databases(NamedTuple):
    target: File
    decoy: File
    concat: File


class Quant(NamedTuple):
    """Quantification extracted from one mzML."""
    setname: str
    sample: str
    isobaric: Optional[File] = None
    ms1: Optional[File] = None


class Lookup(NamedTuple):
    """The spectra (and quant) lookup database every PSM table is built with."""
    db: File
    quant: bool = False


class Search(NamedTuple):
    setname: str
    sample: str
    plate: str
    fraction: str
    mzid: File


class Percolated(NamedTuple):
    """Search results of a set, rescored together and split into target/decoy PSMs passing both thresholds."""
    setname: str
    target: File
    decoy: File


class Psms(NamedTuple):
    setname: str
    td: str
    psms: File
    denoms: Tuple[str, ...] = ()


class PsmTable(NamedTuple):
    setname: str
    td: str
    table: File
    denoms: Tuple[str, ...] = ()


class FeatureTable(NamedTuple):
    """A feature table of one set, accession type and target/decoy arm. Before the protein level FDR, the
    table of a protein/gene/symbol record is the peptide table it is computed from.
    """
    setname: str
    acctype: str
    td: str
    table: File
    denoms: Tuple[str, ...] = ()
    warnings: Tuple[RunWarning, ...] = ()


class Competition(NamedTuple):
    """The target and decoy table of one (set, acctype) key, with the score column to rank them by."""
    setname: str
    acctype: str
    target: File
    decoy: File
    denoms: Tuple[str, ...]
    score: str
    warnings: Tuple[RunWarning, ...] = ()


class MergedTable(NamedTuple):
    acctype: str
    table: File
    setnames: Tuple[str, ...] = ()


class QcInput(NamedTuple):
    partition: str
    tables: Tuple[PsmTable, ...]


class QcArtifact(NamedTuple):
    name: str
    files: Union[File, Tuple[File, ...]]


def flat_files(value: Any) -> List[File]:
    """Files of a tool output which may have matched one, several or no file."""
    if value is None:
        return []
    if isinstance(value, File):
        return [value]
    return list(value)
