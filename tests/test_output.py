import pytest

from pyprx.errors import IoFailure
from pyprx.output import atomic_output, read_file, write_file


def test_write_file(tmp_path):
    path = tmp_path / 'EBOOT.PBP'
    write_file(str(path), b'payload')
    assert path.read_bytes() == b'payload'
    assert [p.name for p in tmp_path.iterdir()] == ['EBOOT.PBP']


def test_replaces_existing_file(tmp_path):
    path = tmp_path / 'PARAM.SFO'
    path.write_bytes(b'old')
    write_file(str(path), b'new')
    assert path.read_bytes() == b'new'


def test_failure_leaves_nothing_behind(tmp_path):
    path = tmp_path / 'module.prx'
    with pytest.raises(KeyError):
        with atomic_output(str(path)) as fo:
            fo.write(b'partial')
            raise KeyError('stop')
    assert list(tmp_path.iterdir()) == []


def test_failure_keeps_previous_contents(tmp_path):
    path = tmp_path / 'module.prx'
    path.write_bytes(b'previous')
    with pytest.raises(RuntimeError):
        with atomic_output(str(path)) as fo:
            fo.write(b'partial')
            raise RuntimeError('stop')
    assert path.read_bytes() == b'previous'
    assert [p.name for p in tmp_path.iterdir()] == ['module.prx']


def test_missing_directory(tmp_path):
    with pytest.raises(IoFailure) as info:
        write_file(str(tmp_path / 'nowhere' / 'EBOOT.PBP'), b'x', stage='ContainerPacker')
    assert info.value.stage == 'ContainerPacker'
    assert 'ContainerPacker' in str(info.value)


def test_read_file(tmp_path):
    path = tmp_path / 'icon.png'
    path.write_bytes(b'png')
    assert read_file(str(path)) == b'png'
    with pytest.raises(IoFailure):
        read_file(str(tmp_path / 'missing.png'))
