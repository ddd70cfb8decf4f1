import pytest

from pyprx.errors import IoFailure, MissingRequiredAsset
from pyprx.pbp import (
    DATA_PSAR, DATA_PSP, HEADER, ICON0_PNG, PARAM_SFO, PBP_MAGIC, PBP_TAGS, PBP_VERSION, SND0_AT3,
    PBPFile, main, read_assets,
)


def offsets_of(data):
    return list(HEADER.unpack_from(data, 0)[2:])


def test_minimal_container():
    data = PBPFile({PARAM_SFO: b'S' * 20, DATA_PSP: b'P' * 10}).pack()

    magic, version = HEADER.unpack_from(data, 0)[:2]
    assert (magic, version) == (PBP_MAGIC, PBP_VERSION)
    assert offsets_of(data) == [40, 60, 60, 60, 60, 60, 60, 72]
    assert len(data) == 72
    assert data[40:60] == b'S' * 20
    assert data[60:70] == b'P' * 10


def test_entries_are_aligned_and_disjoint():
    payloads = {PARAM_SFO: b'S' * 21, ICON0_PNG: b'I' * 3, SND0_AT3: b'A' * 5,
                DATA_PSP: b'P' * 7, DATA_PSAR: b'R' * 9}
    container = PBPFile(payloads)
    entries = container.entries()
    data = container.pack()

    assert [entry.tag for entry in entries] == list(PBP_TAGS)
    assert [entry.offset for entry in entries] == offsets_of(data)
    for entry, following in zip(entries, entries[1:]):
        assert entry.offset % 4 == 0
        assert entry.end <= following.offset
    assert entries[-1].end == len(data)
    assert sum(entry.size for entry in entries) <= len(data)
    for entry in entries:
        assert data[entry.offset:entry.end] == payloads.get(entry.tag, b'')


def test_required_entries():
    with pytest.raises(MissingRequiredAsset) as info:
        PBPFile({PARAM_SFO: b'S' * 4}).pack()
    assert info.value.tag == DATA_PSP

    with pytest.raises(MissingRequiredAsset) as info:
        PBPFile({DATA_PSP: b'P' * 4, PARAM_SFO: b''}).pack()
    assert info.value.tag == PARAM_SFO


def test_unknown_tag():
    with pytest.raises(ValueError):
        PBPFile({'EXTRA.BIN': b'x'})


def test_unpack():
    payloads = {PARAM_SFO: b'S' * 20, ICON0_PNG: b'I' * 8, DATA_PSP: b'P' * 12}
    container = PBPFile.unpack(PBPFile(payloads).pack())
    for tag in PBP_TAGS:
        assert container[tag] == payloads.get(tag, b'')


def test_unpack_keeps_padding_with_payload():
    container = PBPFile.unpack(PBPFile({PARAM_SFO: b'S' * 5, DATA_PSP: b'P' * 4}).pack())
    assert container[PARAM_SFO] == b'S' * 5 + b'\0' * 3


def test_unpack_rejects_garbage():
    with pytest.raises(RuntimeError):
        PBPFile.unpack(b'\0PBP')
    with pytest.raises(RuntimeError, match='magic'):
        PBPFile.unpack(b'\0PSF' + bytes(36))
    bad = bytearray(PBPFile({PARAM_SFO: b'S' * 4, DATA_PSP: b'P' * 4}).pack())
    bad[8:12] = (1000).to_bytes(4, 'little')
    with pytest.raises(RuntimeError, match='bad offset'):
        PBPFile.unpack(bytes(bad))


def test_read_assets(tmp_path):
    icon = tmp_path / 'icon.png'
    icon.write_bytes(b'png!')
    assert read_assets({ICON0_PNG: str(icon), SND0_AT3: None}) == {ICON0_PNG: b'png!'}

    with pytest.raises(IoFailure) as info:
        read_assets({ICON0_PNG: str(tmp_path / 'missing.png')})
    assert info.value.stage == 'ContainerPacker'


def test_command_line(tmp_path):
    sfo = tmp_path / 'PARAM.SFO'
    sfo.write_bytes(b'S' * 20)
    psp = tmp_path / 'DATA.PSP'
    psp.write_bytes(b'P' * 16)
    out = tmp_path / 'EBOOT.PBP'

    inputs = [str(sfo), 'NULL', 'NULL', 'NULL', 'NULL', 'NULL', str(psp), 'NULL']
    assert main(['pack', str(out)] + inputs) == 0
    with open(out, 'rb') as fo:
        container = PBPFile.load(fo)
    assert container[DATA_PSP] == b'P' * 16

    extracted = tmp_path / 'extracted'
    extracted.mkdir()
    assert main(['unpack', str(out), '--output-dir', str(extracted)]) == 0
    assert sorted(p.name for p in extracted.iterdir()) == ['DATA.PSP', 'PARAM.SFO']
    assert (extracted / 'PARAM.SFO').read_bytes() == b'S' * 20


def test_command_line_missing_required(tmp_path, capsys):
    sfo = tmp_path / 'PARAM.SFO'
    sfo.write_bytes(b'S' * 4)
    out = tmp_path / 'EBOOT.PBP'

    inputs = [str(sfo)] + ['NULL'] * 7
    assert main(['pack', str(out)] + inputs) == 1
    assert 'DATA.PSP' in capsys.readouterr().err
    assert not out.exists()
