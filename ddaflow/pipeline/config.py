"""
Parameters of a DDA pipeline run. One frozen `PipelineConfig` is built before anything runs, the graph builder
and the tool nodes only read from it.

Tool flags selected by small code tables (instrument, fragmentation method, enzyme, labelling protocol) are
closed enumerations looked up with `exhaustive_map`, which fails loudly instead of composing a malformed
command line.
"""
import json
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Tuple, Union, Mapping, Any, List, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class ConfigurationError(ValueError):
    pass


class UnmappedOptionError(ConfigurationError):
    pass


class MissingDenominatorError(KeyError):
    def __init__(self, setname: str, configured: List[str]):
        super().__init__(setname)
        self.setname = setname
        self.configured = configured

    def __str__(self):
        return f"No isobaric denominator configured for set `{self.setname}`, denoms are given for: " \
               f"{', '.join(self.configured) or 'no set'}"


class Instrument(str, Enum):
    lowres = 'lowres'
    velos = 'velos'
    timstof = 'timstof'
    qe = 'qe'


class Activation(str, Enum):
    auto = 'auto'
    cid = 'cid'
    etd = 'etd'
    hcd = 'hcd'


class Enzyme(str, Enum):
    unspecific = 'unspecific'
    trypsin = 'trypsin'
    chymotrypsin = 'chymotrypsin'
    lysc = 'lysc'
    lysn = 'lysn'
    gluc = 'gluc'
    argc = 'argc'
    aspn = 'aspn'
    no_cleavage = 'no_cleavage'


class Isobaric(str, Enum):
    tmt6plex = 'tmt6plex'
    tmt10plex = 'tmt10plex'
    tmt11plex = 'tmt11plex'
    tmt16plex = 'tmt16plex'
    tmtpro = 'tmtpro'
    tmt18plex = 'tmt18plex'
    itraq4plex = 'itraq4plex'
    itraq8plex = 'itraq8plex'


class AccType(str, Enum):
    peptides = 'peptides'
    proteins = 'proteins'
    genes = 'genes'
    symbols = 'symbols'


# MSGF+ -inst
MSGF_INSTRUMENT = {
    Instrument.lowres: 0,
    Instrument.velos: 1,
    Instrument.timstof: 2,
    Instrument.qe: 3,
}

# MSGF+ -m
MSGF_ACTIVATION = {
    Activation.auto: 0,
    Activation.cid: 1,
    Activation.etd: 2,
    Activation.hcd: 3,
}

# MSGF+ -e
MSGF_ENZYME = {
    Enzyme.unspecific: 0,
    Enzyme.trypsin: 1,
    Enzyme.chymotrypsin: 2,
    Enzyme.lysc: 3,
    Enzyme.lysn: 4,
    Enzyme.gluc: 5,
    Enzyme.argc: 6,
    Enzyme.aspn: 7,
    Enzyme.no_cleavage: 9,
}

# MSGF+ -protocol, None is a label free run
MSGF_PROTOCOL = {
    None: 0,
    Isobaric.itraq4plex: 2,
    Isobaric.itraq8plex: 2,
    Isobaric.tmt6plex: 4,
    Isobaric.tmt10plex: 4,
    Isobaric.tmt11plex: 4,
    Isobaric.tmt16plex: 4,
    Isobaric.tmtpro: 4,
    Isobaric.tmt18plex: 4,
}

# reporter ion quantification -type
ISOBARIC_ANALYZER_TYPE = {
    Isobaric.tmt6plex: 'tmt6plex',
    Isobaric.tmt10plex: 'tmt10plex',
    Isobaric.tmt11plex: 'tmt11plex',
    Isobaric.tmt16plex: 'tmt16plex',
    Isobaric.tmtpro: 'tmt16plex',
    Isobaric.tmt18plex: 'tmt18plex',
    Isobaric.itraq4plex: 'itraq4plex',
    Isobaric.itraq8plex: 'itraq8plex',
}

_TMT10 = ('126', '127N', '127C', '128N', '128C', '129N', '129C', '130N', '130C')
_TMT16 = _TMT10 + ('131N', '131C', '132N', '132C', '133N', '133C', '134N')
PLEX_CHANNELS = {
    Isobaric.tmt6plex: ('126', '127', '128', '129', '130', '131'),
    Isobaric.tmt10plex: _TMT10 + ('131',),
    Isobaric.tmt11plex: _TMT10 + ('131N', '131C'),
    Isobaric.tmt16plex: _TMT16,
    Isobaric.tmtpro: _TMT16,
    Isobaric.tmt18plex: _TMT16 + ('134C', '135N'),
    Isobaric.itraq4plex: ('114', '115', '116', '117'),
    Isobaric.itraq8plex: ('113', '114', '115', '116', '117', '118', '119', '121'),
}


def exhaustive_map(table: Mapping, key: Any, option: str) -> Any:
    """The tool code of `key`, UnmappedOptionError for a key the table does not know."""
    try:
        return table[key]
    except KeyError:
        known = ', '.join(str(getattr(k, 'value', k)) for k in table)
        raise UnmappedOptionError(f"No {option} code for `{getattr(key, 'value', key)}`, "
                                  f"expected one of: {known}") from None


def parse_denoms(value: Union[str, Mapping, None]) -> Optional[Dict[str, Tuple[str, ...]]]:
    """Parse denominators given as "setA:126:127N setB:128C" or {'setA': ['126', '127N'], 'setB': '128C'}."""
    if value is None or value == '':
        return None
    denoms = {}
    if isinstance(value, str):
        for item in value.split():
            setname, *channels = item.split(':')
            if not setname or not channels or not all(channels):
                raise ValueError(f"Malformed denominator `{item}`, expected SETNAME:CHANNEL[:CHANNEL...]")
            if setname in denoms:
                raise ValueError(f"Denominators of set `{setname}` are given twice")
            denoms[setname] = tuple(channels)
    elif isinstance(value, Mapping):
        for setname, channels in value.items():
            if isinstance(channels, str):
                channels = channels.replace(':', ' ').split()
            channels = tuple(str(c) for c in channels)
            if not channels:
                raise ValueError(f"Set `{setname}` has no denominator channel")
            denoms[str(setname)] = channels
    else:
        raise ValueError(f"Denominators should be a str or a mapping, got {type(value).__name__}")
    return denoms


class PipelineConfig(BaseModel):
    """Flat run configuration, immutable once built. Every conditional part of the pipeline graph is a
    function of this object only.
    """
    model_config = ConfigDict(frozen=True, extra='forbid')

    PATH_FIELDS: ClassVar[Tuple[str, ...]] = ('mzmldef', 'tdb', 'mods', 'quantlookup')

    # inputs
    mzmldef: Path
    tdb: Path
    mods: Optional[Path] = None
    quantlookup: Optional[Path] = None
    # output and cache locations
    outdir: Path = Path('results')
    workdir: Path = Path('ddaflow_work')
    # search
    instrument: Instrument = Instrument.qe
    activation: Activation = Activation.auto
    enzyme: Enzyme = Enzyme.trypsin
    mincharge: int = Field(2, ge=1)
    maxcharge: int = Field(6, ge=1)
    minpeplen: int = Field(7, ge=1)
    maxpeplen: int = Field(50, ge=1)
    maxmiscleav: int = Field(-1, ge=-1)
    # topology
    isobaric: Optional[Isobaric] = None
    fractions: bool = False
    hirief: bool = False
    genes: bool = False
    symbols: bool = False
    onlypeptides: bool = False
    noquant: bool = False
    normalize: bool = False
    deqms: bool = False
    # FDR thresholds
    psmconflvl: float = Field(0.01, gt=0, le=1)
    pepconflvl: float = Field(0.01, gt=0, le=1)
    denoms: Optional[Dict[str, Tuple[str, ...]]] = None
    # resources
    cpus: int = Field(4, ge=1)
    memory: float = Field(16, gt=0)
    executor: str = 'local'
    allow_s3: bool = False

    @model_validator(mode='before')
    @classmethod
    def check_storage(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            data = dict(data)
            for name in cls.PATH_FIELDS:
                value = data.get(name)
                if isinstance(value, str) and value.startswith('s3://') and not data.get('allow_s3', False):
                    raise ValueError(f"`{name}` is an s3:// path, but s3 storage is not enabled (allow_s3)")
            # HiRIEF runs are always fractionated
            if data.get('hirief'):
                data['fractions'] = True
        return data

    @field_validator('denoms', mode='before')
    @classmethod
    def check_denoms(cls, value):
        return parse_denoms(value)

    @model_validator(mode='after')
    def check_flags(self) -> 'PipelineConfig':
        if self.quantlookup is not None and self.noquant:
            raise ValueError("`quantlookup` provides quantification, it can not be combined with `noquant`")
        if self.mincharge > self.maxcharge:
            raise ValueError(f"mincharge {self.mincharge} is larger than maxcharge {self.maxcharge}")
        if self.minpeplen > self.maxpeplen:
            raise ValueError(f"minpeplen {self.minpeplen} is larger than maxpeplen {self.maxpeplen}")
        if self.isobaric is None or self.noquant:
            for flag in ('denoms', 'normalize', 'deqms'):
                if getattr(self, flag):
                    raise ValueError(f"`{flag}` needs isobaric quantification, set `isobaric` and unset `noquant`")
        if self.denoms:
            channels = PLEX_CHANNELS[self.isobaric]
            for setname, denoms in self.denoms.items():
                unknown = [c for c in denoms if c not in channels]
                if unknown:
                    raise ValueError(f"Denominators {unknown} of set `{setname}` are not channels of "
                                     f"{self.isobaric.value}: {', '.join(channels)}")
        if self.onlypeptides and (self.genes or self.symbols):
            raise ValueError("`genes` and `symbols` tables are built from the protein FDR, "
                             "they can not be combined with `onlypeptides`")
        return self

    @classmethod
    def from_mapping(cls, mapping: Union[Mapping[str, Any], str, Path] = None, **options) -> 'PipelineConfig':
        """Build from a flat mapping, or from the path of a JSON file holding one, updated by `options`.
        Options set to None are left to their defaults. Any invalid option raises ConfigurationError.
        """
        if isinstance(mapping, (str, Path)):
            try:
                with open(mapping) as f:
                    mapping = json.load(f)
            except (OSError, ValueError) as exc:
                raise ConfigurationError(f"Can not read the config file {mapping}: {exc}") from exc
            if not isinstance(mapping, dict):
                raise ConfigurationError(f"The config file should hold a JSON object, got {type(mapping).__name__}")
        values = {k: v for k, v in {**(mapping or {}), **options}.items() if v is not None}
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def check_inputs(self):
        """Required inputs must exist before any node runs."""
        for name in self.PATH_FIELDS:
            path = getattr(self, name)
            if path is not None and not str(path).startswith('s3:') and not Path(path).expanduser().is_file():
                raise ConfigurationError(f"The input `{name}` does not exist: {path}")

    @property
    def quant(self) -> bool:
        """Quantification is extracted by the pipeline itself."""
        return not self.noquant and self.quantlookup is None

    @property
    def acctypes(self) -> Tuple[AccType, ...]:
        """Accession types of the FDR controlled feature tables, peptides excluded."""
        if self.onlypeptides:
            return ()
        acctypes = [AccType.proteins]
        if self.genes:
            acctypes.append(AccType.genes)
        if self.symbols:
            acctypes.append(AccType.symbols)
        return tuple(acctypes)

    def denominators_for(self, setname: str) -> Tuple[str, ...]:
        """Denominator channels of a set, empty when no denominators are configured."""
        if not self.denoms:
            return ()
        if setname not in self.denoms:
            raise MissingDenominatorError(setname, sorted(self.denoms))
        return self.denoms[setname]
