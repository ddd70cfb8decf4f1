import json
import logging

import pytest

from pyprx.errors import IdentifierCollision, IoFailure
from pyprx.image import BIND_EXPORT, BIND_IMPORT, BIND_LOCAL, BinaryImage, Section, Symbol
from pyprx.nid import (
    KNOWN_LIBRARIES, SYSLIB,
    IdentifierResolver, load_reference, merge_reference, nid_for,
)


def image_with(*symbols):
    return BinaryImage(sections=[Section('.text', 'code', data=bytes(16))],
                       symbols=symbols,
                       relocations=[])


def test_identifiers_are_sha1_prefixes():
    assert nid_for('module_start') == 0xd632acdb
    assert nid_for('module_info') == 0xf01d73a7
    assert nid_for('sceKernelExitGame') == 0x05572a5f
    assert nid_for('Foo') == 0x306b1a20
    assert nid_for('Bar') == 0x20fd96e4


def test_identifiers_are_deterministic():
    assert nid_for('Foo') == nid_for('Foo')
    assert nid_for('Foo') != nid_for('foo')


def test_known_syslib_table_matches_derivation():
    for name, identifier in KNOWN_LIBRARIES[SYSLIB].items():
        assert nid_for(name) == identifier


def test_resolves_imports_exports_and_syslib():
    image = image_with(
        Symbol('module_start', BIND_LOCAL, section='.text'),
        Symbol('Foo', BIND_IMPORT, library='LibX'),
        Symbol('Bar', BIND_EXPORT, library='LibY', section='.text', value=8),
    )
    resolution = IdentifierResolver().resolve(image)

    assert [entry.name for entry in resolution.exports[SYSLIB]] == ['module_start', 'module_info']
    assert all(entry.verified for entry in resolution.exports[SYSLIB])

    foo, = resolution.imports['LibX']
    assert foo.identifier == 0x306b1a20
    assert not foo.exported
    assert resolution.lookup('Foo@LibX') is foo

    bar, = resolution.exports['LibY']
    assert bar.key == 'Bar@@LibY'
    assert resolution.by_identifier('LibY', 0x20fd96e4, exported=True) is bar


def test_start_symbol_stands_in_for_module_start():
    image = image_with(Symbol('_start', BIND_LOCAL, section='.text'))
    resolution = IdentifierResolver().resolve(image)
    start = resolution.exports[SYSLIB][0]
    assert (start.name, start.key) == ('module_start', '_start')


def test_collision_names_both_symbols():
    image = image_with(
        Symbol('Foo', BIND_IMPORT, library='LibX'),
        Symbol('Baz', BIND_IMPORT, library='LibX'),
    )
    resolver = IdentifierResolver(derive=lambda name: 0x12345678)
    with pytest.raises(IdentifierCollision) as info:
        resolver.resolve(image)

    error = info.value
    assert error.library == 'LibX'
    assert {error.first, error.second} == {'Foo', 'Baz'}
    assert "'Foo'" in str(error) and "'Baz'" in str(error)


def test_same_identifier_in_different_libraries_is_fine():
    image = image_with(
        Symbol('Foo', BIND_IMPORT, library='LibX'),
        Symbol('Baz', BIND_IMPORT, library='LibZ'),
    )
    resolution = IdentifierResolver(derive=lambda name: 0x12345678).resolve(image)
    assert set(resolution.imports) == {'LibX', 'LibZ'}


def test_unverified_identifiers_are_reported(caplog):
    image = image_with(Symbol('Foo', BIND_IMPORT, library='LibX'))
    with caplog.at_level(logging.INFO, logger='pyprx.nid'):
        resolution = IdentifierResolver().resolve(image)

    assert [entry.name for entry in resolution.unverified] == ['Foo']
    assert 'unverified identifier LibX:Foo' in caplog.text


def test_reference_mismatch_is_a_warning(caplog):
    image = image_with(Symbol('Foo', BIND_IMPORT, library='LibX'))
    resolver = IdentifierResolver(reference={'LibX': {'Foo': 0xdeadbeef}})
    with caplog.at_level(logging.WARNING, logger='pyprx.nid'):
        resolution = resolver.resolve(image)

    assert resolution.imports['LibX'][0].identifier == 0x306b1a20
    assert not resolution.imports['LibX'][0].verified
    assert 'differs from known 0xdeadbeef' in caplog.text


def test_load_reference(tmp_path):
    path = tmp_path / 'libs.json'
    path.write_text(json.dumps({'ThreadManForUser': {'sceKernelExitGame': '0x05572a5f', 'Other': 17}}))
    reference = load_reference(str(path))
    assert reference == {'ThreadManForUser': {'sceKernelExitGame': 0x05572a5f, 'Other': 17}}

    merged = merge_reference(KNOWN_LIBRARIES, reference)
    assert set(merged) == {SYSLIB, 'ThreadManForUser'}


def test_load_reference_errors(tmp_path):
    with pytest.raises(IoFailure):
        load_reference(str(tmp_path / 'missing.json'))

    bad = tmp_path / 'bad.json'
    bad.write_text('{not json')
    with pytest.raises(IoFailure, match='not valid JSON'):
        load_reference(str(bad))

    bad.write_text(json.dumps({'LibX': {'Foo': 'zz'}}))
    with pytest.raises(IoFailure, match='bad identifier'):
        load_reference(str(bad))


def test_without_drops_entries():
    image = image_with(
        Symbol('Foo', BIND_IMPORT, library='LibX'),
        Symbol('Baz', BIND_IMPORT, library='LibX'),
    )
    resolution = IdentifierResolver().resolve(image)
    foo = resolution.lookup('Foo@LibX')
    reduced = resolution.without([foo])

    assert reduced.lookup('Foo@LibX') is None
    assert [entry.name for entry in reduced.imports['LibX']] == ['Baz']
    assert len(resolution.imports['LibX']) == 2
