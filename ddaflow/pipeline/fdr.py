"""
Target/decoy FDR controller. The target and decoy feature tables of each (set, accession type) key are paired,
split side by side and competed against each other:

    tables --group_tuple(setname, acctype)--> pairs --filter(paired)--> --transpose--> --choice(td)--> target, decoy
    (target, decoy) --score check--> competitions --cross(databases)--> competition tool --> FDR controlled tables
"""
from typing import Sequence

import ddaflow
from ddaflow.core.channel import Channel
from ddaflow.core.task import BaseTask
from ddaflow.pipeline.records import FeatureTable, TD

PAIR_KEY = ('setname', 'acctype')


def paired(group: FeatureTable) -> bool:
    """A grouped key with exactly one target and one decoy table, any other group is dropped with a warning."""
    if len(group.td) == 2 and sorted(group.td) == sorted(TD):
        return True
    ddaflow.context.record_warning(
        'PairingWarning',
        f"No target/decoy competition for {group.acctype} of set {group.setname}, it needs one target and one "
        f"decoy table but got: {', '.join(group.td) or 'none'}",
        setname=group.setname,
        key=group.acctype,
    )
    return False


def relabel(table: FeatureTable, acctype: str) -> FeatureTable:
    return table._replace(acctype=acctype)


def per_acctype(peptides: Channel, acctypes: Sequence[str]) -> Channel:
    """Each peptide table once per accession type computed from it, relabelled with that accession type."""
    return peptides.cross(Channel.values(*acctypes), into=relabel)


def compete(tables: Channel, databases: Channel, score_check: BaseTask, competition: BaseTask) -> Channel:
    """Run the competition of every paired (set, acctype) key. `databases` is consumed once and broadcast to
    every competition.

    Parameters
    ----------
    tables
        target and decoy FeatureTables, one per (setname, acctype, td)
    databases
        the Databases record, the picked FDR of genes and symbols needs the target and decoy fasta
    score_check
        node building the Competition record of a target and a decoy table
    competition
        the competition tool node

    Returns
    -------
    The channel of FDR controlled target FeatureTables.
    """
    target, decoy = tables \
        .group_tuple(by=PAIR_KEY) \
        .filter(by=paired) \
        .transpose(by=PAIR_KEY) \
        .choice(by='td', outlets=TD)
    competitions = score_check(target, decoy)
    competitions, dbs = competitions.cross(databases).split(num=2)
    return competition(competitions, dbs)
