import json

import pytest
from pydantic import ValidationError

from ddaflow.api import *


def test_defaults(make_params):
    params = make_params()
    assert params.quant
    assert params.acctypes == (AccType.proteins,)
    assert params.denominators_for('A') == ()
    with pytest.raises(ValidationError):
        params.genes = True


def test_acctypes(make_params):
    assert make_params(genes=True, symbols=True).acctypes == (AccType.proteins, AccType.genes, AccType.symbols)
    assert make_params(onlypeptides=True).acctypes == ()


def test_from_json_file(tmp_path, inputs):
    config = tmp_path / 'config.json'
    config.write_text(json.dumps({**inputs, 'isobaric': 'tmt10plex', 'denoms': 'A:126 B:127N:127C'}))
    params = PipelineConfig.from_mapping(str(config), genes=True, symbols=None)
    assert params.isobaric is Isobaric.tmt10plex
    assert params.genes and not params.symbols
    assert params.denoms == {'A': ('126',), 'B': ('127N', '127C')}


@pytest.mark.parametrize('options', [
    {'instrument': 'orbitrap'},
    {'mincharge': 4, 'maxcharge': 3},
    {'psmconflvl': 0},
    {'unknown_option': 1},
    {'denoms': 'A:126'},
    {'isobaric': 'tmt10plex', 'denoms': 'A:999'},
    {'isobaric': 'tmt10plex', 'noquant': True, 'normalize': True},
    {'onlypeptides': True, 'genes': True},
    {'quantlookup': 'lookup.sqlite', 'noquant': True},
    {'mzmldef': 's3://bucket/mzmldef.txt'},
])
def test_invalid_options(make_params, options):
    with pytest.raises(ConfigurationError):
        make_params(**options)


def test_s3_needs_to_be_enabled(make_params):
    params = make_params(tdb='s3://bucket/target.fa', allow_s3=True)
    # remote inputs are not checked locally
    params.check_inputs()


def test_hirief_is_fractionated(make_params):
    assert make_params(hirief=True).fractions


def test_check_inputs(make_params, tmp_path):
    params = make_params(tdb=str(tmp_path / 'missing.fa'))
    with pytest.raises(ConfigurationError, match='tdb'):
        params.check_inputs()


def test_parse_denoms():
    assert parse_denoms('setA:126:127N setB:128C') == {'setA': ('126', '127N'), 'setB': ('128C',)}
    assert parse_denoms({'setA': ['126', '127N'], 'setB': '128C'}) == {'setA': ('126', '127N'), 'setB': ('128C',)}
    assert parse_denoms('') is None
    for malformed in ('setA', 'setA:126 setA:127N', ':126'):
        with pytest.raises(ValueError):
            parse_denoms(malformed)


def test_missing_denominator(make_params):
    params = make_params(isobaric='tmt10plex', denoms='A:126')
    assert params.denominators_for('A') == ('126',)
    with pytest.raises(MissingDenominatorError) as exc_info:
        params.denominators_for('B')
    assert exc_info.value.setname == 'B'
    assert '`B`' in str(exc_info.value)


def test_exhaustive_map():
    assert exhaustive_map(MSGF_ENZYME, Enzyme.trypsin, 'enzyme') == 1
    assert exhaustive_map(MSGF_PROTOCOL, None, 'isobaric') == 0
    assert exhaustive_map(ISOBARIC_ANALYZER_TYPE, Isobaric.tmtpro, 'isobaric') == 'tmt16plex'
    with pytest.raises(UnmappedOptionError, match='isobaric'):
        exhaustive_map(ISOBARIC_ANALYZER_TYPE, None, 'isobaric')


def test_every_option_is_mapped():
    for table, options in ((MSGF_INSTRUMENT, Instrument), (MSGF_ACTIVATION, Activation), (MSGF_ENZYME, Enzyme),
                           (ISOBARIC_ANALYZER_TYPE, Isobaric), (PLEX_CHANNELS, Isobaric)):
        for option in options:
            exhaustive_map(table, option, options.__name__)


def test_read_mzmldef(inputs):
    mzmls = read_mzmldef(inputs['mzmldef'])
    assert [(m.setname, m.sample, m.plate) for m in mzmls] == [
        ('A', 'A_1', NOPLATES), ('A', 'A_2', NOPLATES), ('B', 'B_1', NOPLATES), ('B', 'B_2', NOPLATES)]
    assert set_names(mzmls) == ('A', 'B')

    fractionated = read_mzmldef(inputs['mzmldef'], fractions=True)
    assert qc_partitions(fractionated) == ('plate1', 'plate2')
    assert [m.fraction for m in fractionated] == ['1', '2', '1', '2']


def test_read_mzmldef_errors(tmp_path, inputs):
    mzmldef = tmp_path / 'broken.txt'
    mzmldef.write_text(f"{tmp_path / 'data' / 'A_1.mzML'}\tA\n{tmp_path / 'data' / 'A_1.mzML'}\tB\n")
    with pytest.raises(ConfigurationError, match='duplicates'):
        read_mzmldef(mzmldef)

    mzmldef.write_text(f"{tmp_path / 'data' / 'A_1.mzML'}\tA\n")
    with pytest.raises(ConfigurationError, match='plate'):
        read_mzmldef(mzmldef, fractions=True)

    mzmldef.write_text(f"{tmp_path / 'missing.mzML'}\tA\n")
    with pytest.raises(ConfigurationError, match='does not exist'):
        read_mzmldef(mzmldef)
