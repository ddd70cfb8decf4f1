import logging
import os

import pytest

from elfbuilder import sample_builder

from pyprx import build as build_module
from pyprx.build import build, link_module, main, make_parser
from pyprx.pbp import DATA_PSP, ICON0_PNG, PARAM_SFO, PBPFile
from pyprx.prx import PRXFile
from pyprx.sfo import SFOFile


def load(path, kind):
    with open(path, 'rb') as fo:
        return kind.load(fo)


def test_build_writes_all_outputs(sample_path, tmp_path):
    out = tmp_path / 'out'
    assert main([str(sample_path), str(out), '--title', 'Hello']) == 0

    assert sorted(p.name for p in out.iterdir()) == ['EBOOT.PBP', 'PARAM.SFO', 'hello.prx']
    prx = (out / 'hello.prx').read_bytes()
    sfo = (out / 'PARAM.SFO').read_bytes()

    container = load(out / 'EBOOT.PBP', PBPFile)
    assert container[DATA_PSP] == prx
    assert container[PARAM_SFO] == sfo
    assert load(out / 'PARAM.SFO', SFOFile)['TITLE'] == 'Hello'

    module = load(out / 'hello.prx', PRXFile)
    assert module.module_info.name == 'hello'
    assert not module.kernel_mode
    assert module.symbols


def test_build_returns_paths(sample_path, tmp_path):
    args = make_parser().parse_args([str(sample_path), str(tmp_path / 'nested' / 'out')])
    paths = build(args)
    assert [os.path.basename(p) for p in paths] == ['hello.prx', 'PARAM.SFO', 'EBOOT.PBP']


def test_options_from_file(sample_path, tmp_path):
    config = tmp_path / 'build.cfg'
    config.write_text('--title\nFrom a file\n--kernel-mode\n--name\nconfigured\n')
    out = tmp_path / 'out'

    assert main([str(sample_path), str(out), f'@{config}']) == 0
    module = load(out / 'hello.prx', PRXFile)
    assert module.kernel_mode
    assert module.module_info.name == 'configured'
    assert load(out / 'PARAM.SFO', SFOFile)['TITLE'] == 'From a file'


def test_strip_option(sample_path, tmp_path):
    out = tmp_path / 'out'
    assert main([str(sample_path), str(out), '--strip']) == 0
    module = load(out / 'hello.prx', PRXFile)
    assert module.symbols == []
    assert module.debug_sections == []


def test_drop_export(tmp_path):
    path = sample_builder(exports=('Bar', 'Qux')).write(tmp_path / 'game.o')
    args = make_parser().parse_args([str(path), str(tmp_path / 'out'), '--strip',
                                     '--drop-export', 'LibY:Qux'])
    module = link_module(args)
    assert [e.name for e in module.exports() if e.library == 'LibY'] == ['Bar']


def test_sfo_fields_and_assets(sample_path, tmp_path):
    icon = tmp_path / 'icon.png'
    icon.write_bytes(b'\x89PNG')
    out = tmp_path / 'out'

    assert main([str(sample_path), str(out), '--sfo', 'APP_VER=01.00', '--sfo', 'PARENTAL_LEVEL=3',
                 '--icon', str(icon)]) == 0
    record = load(out / 'PARAM.SFO', SFOFile)
    assert record['APP_VER'] == '01.00'
    assert record['PARENTAL_LEVEL'] == 3
    assert load(out / 'EBOOT.PBP', PBPFile)[ICON0_PNG] == b'\x89PNG'


def test_missing_input(tmp_path, capsys):
    assert main([str(tmp_path / 'missing.o'), str(tmp_path / 'out')]) == 1
    err = capsys.readouterr().err
    assert err.startswith('error: ImageReader:')
    assert not (tmp_path / 'out').exists()


def test_malformed_input(tmp_path, capsys):
    path = tmp_path / 'junk.o'
    path.write_bytes(b'this is not an object file at all, not even close' * 2)
    assert main([str(path), str(tmp_path / 'out')]) == 1
    assert 'bad magic' in capsys.readouterr().err


def test_field_too_long_writes_nothing(sample_path, tmp_path, capsys):
    out = tmp_path / 'out'
    assert main([str(sample_path), str(out), '--title', 'x' * 129]) == 1
    assert 'MetadataEncoder' in capsys.readouterr().err
    assert not out.exists()


def test_usage_errors_exit_2(capsys):
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == 2

    with pytest.raises(SystemExit) as info:
        main(['in.o', 'out', '--sfo', 'BOOTABLE=yes'])
    assert info.value.code == 2


@pytest.mark.parametrize('flags, level', [
    ([], logging.WARNING),
    (['--verbose'], logging.INFO),
    (['--debug'], logging.DEBUG),
    (['--verbose', '--debug'], logging.DEBUG),
])
def test_logging_levels(monkeypatch, flags, level):
    seen = {}
    monkeypatch.setattr(build_module.logging, 'basicConfig', lambda **kwargs: seen.update(kwargs))
    build_module.setup_logging(make_parser().parse_args(['in.o', 'out'] + flags))
    assert seen['level'] == level
