#
# ELF object reader
#
# Reads a MIPS little-endian ELF32 relocatable object (the output of
# `ld -r` or `ld --emit-relocs`) into a BinaryImage.
#

import io
import logging
import os
import struct

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection
from elftools.elf.sections import SymbolTableSection

from .errors import IoFailure, MalformedImage
from .image import (
    BIND_EXPORT, BIND_IMPORT, BIND_LOCAL, BIND_UNDEFINED,
    KIND_BSS, KIND_CODE, KIND_DATA, KIND_DEBUG, KIND_METADATA, KIND_RODATA,
    LOADER_SECTIONS, MODULE_INFO_SECTION,
    R_MIPS_26, R_MIPS_32, R_MIPS_GPREL16, R_MIPS_HI16, R_MIPS_LO16, R_MIPS_NONE, R_MIPS_PC16,
    SUPPORTED_RELOCS,
    TYPE_FUNC, TYPE_NOTYPE, TYPE_OBJECT, TYPE_SECTION,
    BinaryImage, Relocation, Section, Symbol,
    align_up, reloc_name, sign_extend_16,
)

logger = logging.getLogger(__name__)

ELF_MAGIC = b'\x7fELF'
ELF32_HEADER_SIZE = 52
EI_CLASS = 4
EI_DATA = 5
ELFCLASS32 = 1
ELFDATA2LSB = 1

# pseudo-section for SHN_ABS symbols
ABS_SECTION = '*ABS*'
COMMON_SECTION = '.bss.common'

RESERVED_SECTIONS = tuple(name for name in LOADER_SECTIONS if name != MODULE_INFO_SECTION)

DEBUG_PREFIXES = ('.debug', '.comment', '.mdebug', '.pdr', '.gnu_debuglink')
# ABI notes the loader never sees
DROPPED_SECTIONS = ('.reginfo', '.MIPS.abiflags', '.gnu.attributes')
CONSUMED_TYPES = ('SHT_NULL', 'SHT_SYMTAB', 'SHT_STRTAB', 'SHT_REL', 'SHT_RELA', 'SHT_GROUP')

SYMBOL_TYPES = {
    'STT_FUNC': TYPE_FUNC,
    'STT_OBJECT': TYPE_OBJECT,
}


def split_symbol_name(name):
    """
    Split a versioned symbol name into (name, library, exported)

    'Foo@LibX' is an import of Foo from LibX, 'Bar@@LibY' an export of Bar in LibY.
    """
    if '@@' in name:
        base, library = name.split('@@', 1)
        if base and library:
            return base, library, True
    elif '@' in name:
        base, library = name.split('@', 1)
        if base and library:
            return base, library, False
    return name, None, False


class ELFReader:
    """
    Parse a relocatable ELF object; at most one symbol table is supported and
    relocations must refer to it.
    """

    def __init__(self, data, name='module'):
        self._data = data
        self._name = name
        self._elf = None
        self._sections = dict()         # ELF section index -> Section
        self._symbol_keys = list()      # ELF symbol index -> key used by relocations
        self._symbols = list()
        self._relocations = list()
        self._symtab_index = None

    @classmethod
    def load(cls, fo, name=None):
        if name is None:
            name = os.path.splitext(os.path.basename(getattr(fo, 'name', 'module')))[0]
        return cls(fo.read(), name=name).read()

    def read(self):
        self._check_header()
        try:
            self._elf = ELFFile(io.BytesIO(self._data))
            self._check_identity()
            self._read_sections()
            self._read_symbols()
            self._read_relocations()
        except ELFError as e:
            raise MalformedImage(self._name, f'ELF parse error: {e}') from e

        image = BinaryImage(sections=self._sections.values(),
                            symbols=self._symbols,
                            relocations=self._relocations,
                            name=self._name,
                            flags=self._elf.header['e_flags'])
        logger.info(f'read {self._name}: {len(image.sections)} sections, '
                    f'{len(image.symbols)} symbols, {len(image.relocations)} relocations')
        return image

    def _check_header(self):
        if len(self._data) < len(ELF_MAGIC) or self._data[:4] != ELF_MAGIC:
            raise MalformedImage(self._name, 'not an ELF file (bad magic)')
        if len(self._data) < ELF32_HEADER_SIZE:
            raise MalformedImage(self._name, f'header truncated at {len(self._data)} bytes')
        if self._data[EI_CLASS] != ELFCLASS32:
            raise MalformedImage(self._name, f'ELF class {self._data[EI_CLASS]} is not 32-bit',
                                 hint='wrong architecture?')
        if self._data[EI_DATA] != ELFDATA2LSB:
            raise MalformedImage(self._name, 'big-endian ELF', hint='wrong architecture? expected mipsel')

        # the section header table is read before anything else can be checked
        shoff, = struct.unpack_from('<I', self._data, 32)
        shentsize, shnum = struct.unpack_from('<HH', self._data, 46)
        if shnum == 0:
            raise MalformedImage(self._name, 'no section header table')
        table_end = shoff + shnum * shentsize
        if table_end > len(self._data):
            raise MalformedImage(self._name,
                                 f'section header table ends at 0x{table_end:x}, past end of file '
                                 f'at 0x{len(self._data):x}')

    def _check_identity(self):
        header = self._elf.header
        if header['e_machine'] != 'EM_MIPS':
            raise MalformedImage(self._name, f'machine {header["e_machine"]} is not MIPS',
                                 hint='wrong architecture?')
        if header['e_type'] != 'ET_REL':
            raise MalformedImage(self._name, f'type {header["e_type"]} is not a relocatable object',
                                 hint='link with -r or --emit-relocs?')

    def _classify(self, section):
        sh_type = section['sh_type']
        flags = section['sh_flags']
        if sh_type in CONSUMED_TYPES or section.name in DROPPED_SECTIONS:
            return None
        if flags & SH_FLAGS.SHF_ALLOC:
            if section.name == MODULE_INFO_SECTION:
                return KIND_METADATA
            if sh_type == 'SHT_NOBITS':
                return KIND_BSS
            if flags & SH_FLAGS.SHF_EXECINSTR:
                return KIND_CODE
            if flags & SH_FLAGS.SHF_WRITE:
                return KIND_DATA
            return KIND_RODATA
        if section.name.startswith(DEBUG_PREFIXES):
            return KIND_DEBUG
        return None

    def _read_sections(self):
        for index, section in enumerate(self._elf.iter_sections()):
            name = section.name
            kind = self._classify(section)
            if kind is None:
                continue
            if name in RESERVED_SECTIONS:
                raise MalformedImage(name, 'object already contains import/export tables',
                                     hint='built against prebuilt stub libraries?')

            size = section['sh_size']
            if kind != KIND_BSS:
                end = section['sh_offset'] + size
                if end > len(self._data):
                    raise MalformedImage(name, f'contents end at 0x{end:x}, past end of file '
                                         f'at 0x{len(self._data):x}')
                if size == 0:
                    continue

            align = max(section['sh_addralign'], 1)
            if align & (align - 1):
                raise MalformedImage(name, f'alignment {align} is not a power of two')

            if kind == KIND_BSS:
                carried = Section(name, kind, align=align, size=size)
            else:
                carried = Section(name, kind, data=section.data(), align=align,
                                  preserve=(kind == KIND_METADATA))
            self._sections[index] = carried
            logger.debug(f'section {name}: {kind} 0x{size:x} align {align}')

    def _find_symbol_table(self):
        tables = [(index, s) for index, s in enumerate(self._elf.iter_sections())
                  if isinstance(s, SymbolTableSection) and s['sh_type'] == 'SHT_SYMTAB']
        if len(tables) == 0:
            raise MalformedImage(self._name, 'no symbol table', hint='was the object stripped?')
        if len(tables) > 1:
            raise MalformedImage(self._name, 'more than one symbol table')
        return tables[0]

    def _read_symbols(self):
        self._symtab_index, symtab = self._find_symbol_table()
        seen = set()
        common = list()

        for index, symbol in enumerate(symtab.iter_symbols()):
            key = None
            if index > 0:
                key = self._read_symbol(index, symbol, seen, common)
            self._symbol_keys.append(key)

        if common:
            self._allocate_common(common)

    def _read_symbol(self, index, symbol, seen, common):
        name = str(symbol.name)
        sym_type = symbol['st_info']['type']
        shndx = symbol['st_shndx']
        value = symbol['st_value']
        size = symbol['st_size']

        if sym_type == 'STT_FILE':
            return None

        if sym_type == 'STT_SECTION':
            section = self._sections.get(shndx)
            if section is None:
                return None
            if section.name not in seen:
                seen.add(section.name)
                self._symbols.append(Symbol(section.name, BIND_LOCAL, section=section.name,
                                            type=TYPE_SECTION))
            return section.name

        base, library, exported = split_symbol_name(name)
        typ = SYMBOL_TYPES.get(sym_type, TYPE_NOTYPE)

        if shndx == 'SHN_UNDEF':
            if library is not None and not exported:
                new = Symbol(base, BIND_IMPORT, library=library, type=typ)
            else:
                new = Symbol(name, BIND_UNDEFINED, type=typ)
        else:
            if shndx == 'SHN_ABS':
                section_name = ABS_SECTION
            elif shndx == 'SHN_COMMON':
                section_name = COMMON_SECTION
            else:
                section = self._sections.get(shndx)
                if section is None:
                    logger.debug(f'symbol {name} lives in a discarded section, ignored')
                    return None
                section_name = section.name
                if value > section.size:
                    raise MalformedImage(f'symbol {name}',
                                         f'value 0x{value:x} outside section {section_name}')
            if exported:
                new = Symbol(base, BIND_EXPORT, library=library, section=section_name,
                             value=value, size=size, type=typ)
            else:
                if name in seen:
                    # duplicate static symbols from different objects
                    name = f'{name}~{index}'
                new = Symbol(name, BIND_LOCAL, section=section_name, value=value, size=size, type=typ)
            if shndx == 'SHN_COMMON':
                common.append((new, value))

        if new.key in seen and new.binding in (BIND_IMPORT, BIND_UNDEFINED):
            return new.key
        if new.key in seen:
            raise MalformedImage(f'symbol {new.key}', 'defined more than once')
        seen.add(new.key)
        if not new.defined or new.section != COMMON_SECTION:
            self._symbols.append(new)
        return new.key

    def _allocate_common(self, common):
        offset = 0
        align = 4
        placed = dict()
        for symbol, alignment in common:
            alignment = max(alignment, 1)
            align = max(align, alignment)
            offset = align_up(offset, alignment)
            placed[symbol.key] = offset
            self._symbols.append(Symbol(symbol.name, symbol.binding, library=symbol.library,
                                        section=COMMON_SECTION, value=offset, size=symbol.size,
                                        type=TYPE_OBJECT))
            offset += symbol.size
        index = max(list(self._sections.keys()) + [0]) + 1
        self._sections[index] = Section(COMMON_SECTION, KIND_BSS, align=align, size=offset)
        logger.debug(f'allocated {len(common)} common symbols, 0x{offset:x} bytes')

    def _read_relocations(self):
        found = False
        for section in self._elf.iter_sections():
            if not isinstance(section, RelocationSection):
                continue

            target = self._sections.get(section['sh_info'])
            if target is None:
                continue
            if target.allocated:
                found = True
            if section['sh_link'] != self._symtab_index:
                raise MalformedImage(section.name, 'relocations refer to an unexpected symbol table')
            self._read_relocation_section(section, target)

        if not found:
            raise MalformedImage(self._name, 'no relocation tables',
                                 hint='did you forget to link with --emit-relocs?')

    def _read_relocation_section(self, section, target):
        debug = target.kind == KIND_DEBUG
        relocs = list(section.iter_relocations())
        is_rela = section.is_RELA()

        for position, reloc in enumerate(relocs):
            kind = reloc['r_info_type']
            offset = reloc['r_offset']
            sym_index = reloc['r_info_sym']
            where = f'{target.name}+0x{offset:x}'

            if kind == R_MIPS_NONE:
                continue
            if debug and kind != R_MIPS_32:
                logger.debug(f'{where}: dropping {reloc_name(kind)} in debug section')
                continue
            if kind not in SUPPORTED_RELOCS:
                raise MalformedImage(where, f'unsupported relocation {reloc_name(kind)}',
                                     hint='compile with -G0 -mno-abicalls?')
            if target.kind == KIND_BSS:
                raise MalformedImage(where, 'relocation applies to a section without contents')
            if offset + 4 > target.size:
                raise MalformedImage(where, f'relocation outside section of size 0x{target.size:x}')
            if sym_index >= len(self._symbol_keys):
                raise MalformedImage(where, f'symbol index {sym_index} out of bounds')

            key = self._symbol_keys[sym_index]
            if key is None:
                if debug:
                    continue
                raise MalformedImage(where, f'relocation against discarded symbol {sym_index}')

            if is_rela:
                addend = reloc['r_addend']
            else:
                addend = self._implicit_addend(kind, target, offset, relocs, position, where)

            self._relocations.append(Relocation(target.name, offset, kind, key, addend))

    def _word(self, section, offset):
        return int.from_bytes(section.data[offset:offset + 4], 'little')

    def _implicit_addend(self, kind, target, offset, relocs, position, where):
        word = self._word(target, offset)
        if kind == R_MIPS_32:
            return word
        if kind == R_MIPS_26:
            return (word & 0x03ffffff) << 2
        if kind == R_MIPS_LO16 or kind == R_MIPS_GPREL16:
            return sign_extend_16(word)
        if kind == R_MIPS_PC16:
            return sign_extend_16(word) << 2
        if kind == R_MIPS_HI16:
            lo = self._paired_lo16(relocs, position)
            if lo is None:
                raise MalformedImage(where, 'R_MIPS_HI16 without a matching R_MIPS_LO16')
            return ((word & 0xffff) << 16) + sign_extend_16(self._word(target, lo['r_offset']))
        raise MalformedImage(where, f'unsupported relocation {reloc_name(kind)}')

    @staticmethod
    def _paired_lo16(relocs, position):
        symbol = relocs[position]['r_info_sym']
        for reloc in relocs[position + 1:]:
            if reloc['r_info_type'] == R_MIPS_LO16 and reloc['r_info_sym'] == symbol:
                return reloc
        return None


def read_image(path):
    """
    Read the ELF object at path
    """
    try:
        with open(path, 'rb') as fo:
            return ELFReader.load(fo)
    except OSError as e:
        raise IoFailure(path, f'cannot read input: {e.strerror}', stage='ImageReader',
                        hint='does the input path exist?') from e
