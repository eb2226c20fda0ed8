"""
Python nodes guarding the FDR steps. They only read tab separated tables, the statistics stay in the tools.
"""
from pathlib import Path
from typing import Union

import pandas as pd

import ddaflow
from ddaflow.core.models import RunWarning
from ddaflow.core.task import Task
from ddaflow.pipeline.records import Psms, FeatureTable, Competition

PRIMARY_SCORE = 'percolator svm-score'
FALLBACK_SCORE = 'MSGFScore'


class ThresholdEmptyError(RuntimeError):
    def __init__(self, setname: str, td: str, psmconflvl: float, pepconflvl: float):
        super().__init__(setname, td, psmconflvl, pepconflvl)
        self.setname = setname
        self.td = td
        self.psmconflvl = psmconflvl
        self.pepconflvl = pepconflvl

    def __str__(self):
        return f"No {self.td} PSM of set `{self.setname}` passed the FDR thresholds " \
               f"psmconflvl={self.psmconflvl} and pepconflvl={self.pepconflvl}, " \
               f"check the input files of the set or relax the thresholds."


def count_rows(path: Union[str, Path]) -> int:
    """Number of data rows of a table with a header line, 0 for an empty file."""
    try:
        return len(pd.read_csv(path, sep='\t', usecols=[0]))
    except pd.errors.EmptyDataError:
        return 0


def informative_scores(path: Union[str, Path], column: str) -> bool:
    """False when the score column is absent, all missing or all zero."""
    try:
        df = pd.read_csv(path, sep='\t', usecols=[column])
    except pd.errors.EmptyDataError:
        return False
    except ValueError:
        # usecols does not match the header
        return False
    scores = pd.to_numeric(df[column], errors='coerce').dropna()
    return bool(len(scores) and (scores != 0).any())


class ThresholdCheck(Task):
    """Fail the set branch when no PSM survives the PSM and peptide q-value thresholds."""

    @property
    def params(self):
        return self.context.get('params', None)

    def hash_params(self) -> dict:
        if self.params is None:
            return {}
        return {'psmconflvl': self.params.psmconflvl, 'pepconflvl': self.params.pepconflvl}

    def run(self, psms: Psms) -> Psms:
        num = count_rows(psms.psms)
        if num == 0:
            params = self.params
            raise ThresholdEmptyError(psms.setname, psms.td,
                                      getattr(params, 'psmconflvl', None), getattr(params, 'pepconflvl', None))
        ddaflow.context.logger.info(f"{num} {psms.td} PSMs of set {psms.setname} passed the FDR thresholds.")
        return psms


class ScoreCheck(Task):
    """Pick the score the target/decoy competition ranks by. When the primary score of either table carries no
    information, the raw search engine score is used instead and the substitution is recorded on the record.
    """
    default_config = {
        'primary_score': PRIMARY_SCORE,
        'fallback_score': FALLBACK_SCORE,
    }

    def hash_params(self) -> dict:
        return {k: self.config_dict[k] for k in ('primary_score', 'fallback_score')}

    def run(self, target: FeatureTable, decoy: FeatureTable) -> Competition:
        primary, fallback = self.config_dict['primary_score'], self.config_dict['fallback_score']
        score, warnings = primary, ()
        uninformative = [t.td for t in (target, decoy) if not informative_scores(t.table, primary)]
        if uninformative:
            score = fallback
            warning = RunWarning(
                kind='ScoreFallbackWarning',
                message=f"`{primary}` of the {' and '.join(uninformative)} {target.acctype} input is all zero or "
                        f"missing, ranked by `{fallback}` instead",
                task=self.config_dict['name'],
                setname=target.setname,
                key=target.acctype,
            )
            ddaflow.context.logger.warning(str(warning))
            warnings = (warning,)
        return Competition(
            setname=target.setname,
            acctype=target.acctype,
            target=target.table,
            decoy=decoy.table,
            denoms=target.denoms,
            score=score,
            warnings=tuple(target.warnings) + tuple(decoy.warnings) + warnings,
        )
