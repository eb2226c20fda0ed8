"""
Source readers, run at build time. They turn the external input lists of a run into records.
"""
from pathlib import Path
from typing import List, Tuple, Union

import pandas as pd

import ddaflow
from ddaflow.core.utility.target import File
from ddaflow.pipeline.config import ConfigurationError
from ddaflow.pipeline.records import Mzml, Lookup, NOPLATES

MZMLDEF_COLUMNS = ['mzml', 'setname', 'plate', 'fraction']


def read_mzmldef(path: Union[str, Path], fractions: bool = False) -> List[Mzml]:
    """Read the tab separated mzML definition, one line per mzML file without header:

        path/to/file.mzML  setname  [plate  fraction]

    Relative mzML paths are relative to the definition file. Plate and fraction are required for
    fractionated runs, otherwise every file belongs to the `noplates` partition.
    """
    path = Path(path).expanduser().resolve()
    try:
        df = pd.read_csv(path, sep='\t', header=None, comment='#', dtype=str, skip_blank_lines=True)
    except pd.errors.EmptyDataError:
        raise ConfigurationError(f"The mzML definition {path} lists no file") from None
    if df.shape[1] < 2:
        raise ConfigurationError(f"The mzML definition {path} needs at least the mzML path and the set name")
    df = df.iloc[:, :len(MZMLDEF_COLUMNS)]
    df.columns = MZMLDEF_COLUMNS[:df.shape[1]]
    df = df.apply(lambda col: col.str.strip())

    if fractions:
        if df.shape[1] < 4 or df[['plate', 'fraction']].isna().any().any():
            raise ConfigurationError(f"Fractionated runs need a plate and a fraction for every mzML of {path}")
    missing_set = df['setname'].isna() | (df['setname'] == '')
    if missing_set.any():
        raise ConfigurationError(f"mzML files without set name in {path}: {df.loc[missing_set, 'mzml'].tolist()}")

    records = []
    for row in df.itertuples(index=False):
        mzml_path = Path(row.mzml).expanduser()
        if not mzml_path.is_absolute():
            mzml_path = path.parent / mzml_path
        if not mzml_path.is_file():
            raise ConfigurationError(f"The mzML file {mzml_path} listed in {path} does not exist")
        records.append(Mzml(
            setname=row.setname,
            sample=mzml_path.stem,
            mzml=File(mzml_path),
            plate=row.plate if fractions else NOPLATES,
            fraction=row.fraction if fractions else '',
        ))

    samples = pd.Series([r.sample for r in records])
    duplicated = samples[samples.duplicated()].unique().tolist()
    if duplicated:
        raise ConfigurationError(f"mzML file names must be unique, found duplicates: {duplicated}")
    ddaflow.context.logger.info(f"Read {len(records)} mzML files of {len(set_names(records))} sets from {path}")
    return records


def set_names(mzmls: List[Mzml]) -> Tuple[str, ...]:
    """Set names in first-seen order."""
    return tuple(dict.fromkeys(m.setname for m in mzmls))


def qc_partitions(mzmls: List[Mzml]) -> Tuple[str, ...]:
    """The partition keys of the PSM QC: the plates in first-seen order, `noplates` for unfractionated runs."""
    return tuple(dict.fromkeys(m.plate for m in mzmls)) or (NOPLATES,)


def read_fasta(path: Union[str, Path]) -> File:
    """The protein database, checked to look like a fasta file."""
    path = Path(path).expanduser()
    with path.open() as f:
        first = next((line for line in f if line.strip()), '')
    if not first.startswith('>'):
        raise ConfigurationError(f"{path} is not a fasta file, the first record should start with `>`")
    return File(path)


def read_lookup(path: Union[str, Path]) -> Lookup:
    """A pre-built quant lookup, replaces the spectra and quant lookup nodes."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"The quant lookup {path} does not exist")
    return Lookup(db=File(path), quant=True)
