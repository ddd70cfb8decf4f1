import struct

import pytest

from elfbuilder import (
    EM_ARM, ET_EXEC, JR_RA, NOP, R_MIPS_32, R_MIPS_HI16, R_MIPS_LO16,
    SHF_EXECINSTR, SHT_PROGBITS, STT_OBJECT,
    ELFBuilder, addiu, lui, sample_builder, words,
)

from pyprx.elf import COMMON_SECTION, ELFReader, read_image, split_symbol_name
from pyprx.errors import IoFailure, MalformedImage
from pyprx.image import (
    BIND_EXPORT, BIND_IMPORT, BIND_LOCAL,
    KIND_BSS, KIND_CODE, KIND_DATA, KIND_DEBUG, KIND_RODATA,
    R_MIPS_26, R_MIPS_GPREL16, R_MIPS_PC16,
)

R_MIPS_GOT16 = 9


def small_builder(**kwargs):
    elf = ELFBuilder(**kwargs)
    elf.section('.text', words(JR_RA, NOP, 0), 'code')
    elf.local('here', '.text', 0)
    elf.reloc('.text', 8, R_MIPS_32, 'here')
    return elf


def read(data):
    return ELFReader(data, name='test').read()


def test_split_symbol_name():
    assert split_symbol_name('Foo@LibX') == ('Foo', 'LibX', False)
    assert split_symbol_name('Bar@@LibY') == ('Bar', 'LibY', True)
    assert split_symbol_name('plain') == ('plain', None, False)
    assert split_symbol_name('@LibX') == ('@LibX', None, False)


def test_sections_are_classified(sample_image):
    kinds = {section.name: section.kind for section in sample_image.sections}
    assert kinds == {
        '.text': KIND_CODE,
        '.rodata': KIND_RODATA,
        '.data': KIND_DATA,
        '.bss': KIND_BSS,
        '.debug_info': KIND_DEBUG,
    }
    bss = sample_image.section('.bss')
    assert bss.size == 0x40
    assert bss.align == 8
    assert sample_image.section('.text').align == 16


def test_symbols_carry_binding_and_library(sample_image):
    foo = sample_image.symbol('Foo@LibX')
    assert foo.binding == BIND_IMPORT
    assert foo.library == 'LibX'
    assert not foo.defined

    bar = sample_image.symbol('Bar@@LibY')
    assert bar.binding == BIND_EXPORT
    assert bar.library == 'LibY'
    assert bar.section == '.text'
    assert bar.value == 36

    message = sample_image.symbol('message')
    assert message.binding == BIND_LOCAL
    assert message.section == '.rodata'


def test_relocations_and_implicit_addends(sample_image):
    found = {(r.section, r.offset): (r.kind, r.symbol, r.addend) for r in sample_image.relocations}
    assert found[('.text', 0)] == (R_MIPS_HI16, 'message', 0)
    assert found[('.text', 4)] == (R_MIPS_LO16, 'message', 0)
    assert found[('.text', 8)] == (R_MIPS_26, 'Foo@LibX', 0)
    assert found[('.text', 16)] == (R_MIPS_GPREL16, 'counter', 0)
    assert found[('.text', 28)] == (R_MIPS_PC16, 'done', -4)
    assert found[('.data', 0)] == (R_MIPS_32, 'message', 0)
    assert found[('.debug_info', 0)] == (R_MIPS_32, 'module_start', 0)


def test_hi16_addend_combines_paired_lo16():
    elf = ELFBuilder()
    elf.section('.text', words(lui(4, 1), addiu(4, 4, 0x8004)), 'code')
    elf.local('target', '.text', 0)
    elf.reloc('.text', 0, R_MIPS_HI16, 'target')
    elf.reloc('.text', 4, R_MIPS_LO16, 'target')
    image = read(elf.build())

    hi, lo = image.relocations
    assert hi.addend == 0x8004
    assert lo.addend == -0x7ffc


def test_rela_addends_are_explicit():
    elf = ELFBuilder(rela=True)
    elf.section('.text', words(lui(4, 0), addiu(4, 4, 0)), 'code')
    elf.local('target', '.text', 0)
    elf.reloc('.text', 0, R_MIPS_HI16, 'target', addend=0x10)
    elf.reloc('.text', 4, R_MIPS_LO16, 'target', addend=0x10)
    image = read(elf.build())

    assert [r.addend for r in image.relocations] == [0x10, 0x10]


def test_common_symbols_are_allocated():
    elf = small_builder()
    elf.common('buffer', 0x20, align=8)
    elf.reloc('.text', 4, R_MIPS_32, 'buffer')
    image = read(elf.build())

    common = image.section(COMMON_SECTION)
    assert common.kind == KIND_BSS
    assert common.size == 0x20
    assert common.align == 8
    buffer = image.symbol('buffer')
    assert buffer.section == COMMON_SECTION
    assert buffer.value == 0


def test_abi_notes_are_dropped():
    elf = small_builder()
    elf.section('.reginfo', bytes(24), 'rodata')
    image = read(elf.build())
    assert not image.has_section('.reginfo')


def test_rejects_bad_magic():
    data = bytearray(small_builder().build())
    data[3] = ord('G')
    with pytest.raises(MalformedImage, match='bad magic'):
        read(bytes(data))


def test_rejects_truncated_header():
    with pytest.raises(MalformedImage, match='header truncated'):
        read(small_builder().build()[:40])


def test_rejects_truncated_section_table():
    with pytest.raises(MalformedImage, match='past end of file'):
        read(small_builder().build()[:-8])


def test_rejects_section_past_end_of_file():
    data = bytearray(small_builder().build())
    shoff = struct.unpack_from('<I', data, 32)[0]
    shentsize, shnum = struct.unpack_from('<HH', data, 46)
    for index in range(shnum):
        header = shoff + index * shentsize
        sh_type, sh_flags = struct.unpack_from('<II', data, header + 4)
        if sh_type == SHT_PROGBITS and sh_flags & SHF_EXECINSTR:
            struct.pack_into('<I', data, header + 20, len(data))
            break
    else:
        pytest.fail('no code section')
    with pytest.raises(MalformedImage, match='contents end at') as info:
        read(bytes(data))
    assert info.value.entity == '.text'


def test_rejects_big_endian():
    data = bytearray(small_builder().build())
    data[5] = 2
    with pytest.raises(MalformedImage, match='big-endian'):
        read(bytes(data))


def test_rejects_wrong_machine():
    with pytest.raises(MalformedImage, match='not MIPS'):
        read(small_builder(machine=EM_ARM).build())


def test_rejects_executable():
    with pytest.raises(MalformedImage, match='not a relocatable object'):
        read(small_builder(elf_type=ET_EXEC).build())


def test_rejects_object_without_relocations():
    elf = ELFBuilder()
    elf.section('.text', words(JR_RA, NOP), 'code')
    elf.symbol('module_start', '.text', 0, 8)
    with pytest.raises(MalformedImage, match='--emit-relocs'):
        read(elf.build())


def test_rejects_unsupported_relocation():
    elf = small_builder()
    elf.reloc('.text', 0, R_MIPS_GOT16, 'here')
    with pytest.raises(MalformedImage, match='R_MIPS_GOT16'):
        read(elf.build())


def test_rejects_unpaired_hi16():
    elf = small_builder()
    elf.reloc('.text', 0, R_MIPS_HI16, 'here')
    with pytest.raises(MalformedImage, match='without a matching R_MIPS_LO16'):
        read(elf.build())


def test_rejects_prebuilt_loader_tables():
    elf = small_builder()
    elf.section('.lib.stub', words(0, 0, 0, 0, 0), 'data')
    with pytest.raises(MalformedImage, match='import/export tables'):
        read(elf.build())


def test_rejects_symbol_outside_section():
    elf = small_builder()
    elf.local('stray', '.text', 0x100, type=STT_OBJECT)
    with pytest.raises(MalformedImage, match='outside section'):
        read(elf.build())


def test_missing_input_is_an_io_failure(tmp_path):
    with pytest.raises(IoFailure) as info:
        read_image(str(tmp_path / 'missing.o'))
    assert info.value.stage == 'ImageReader'


def test_image_name_comes_from_the_file(tmp_path):
    path = sample_builder().write(tmp_path / 'game.o')
    assert read_image(str(path)).name == 'game'
