#!/usr/bin/env python
#
# PRX module linker and file format
#
# ModuleLinker places the sections of a rewritten image in the order the
# firmware loader expects, resolves every relocation against that layout and
# keeps the absolute ones as loader relocations. PRXFile reads and writes the
# ELF-shaped module file.
#

import argparse
import logging
import struct
import sys
from collections import namedtuple

from elftools.elf.constants import P_FLAGS, SH_FLAGS
from hexdump import hexdump

from .elf import ABS_SECTION
from .errors import RelocationOutOfRange, UnresolvedImport
from .image import (
    BIND_EXPORT, KIND_BSS, KIND_CODE, KIND_DATA, KIND_DEBUG,
    ENT_BTM_SECTION, ENT_SECTION, ENT_TOP_SECTION,
    MODULE_INFO_SECTION, NID_SECTION, RESIDENT_SECTION,
    STUB_BTM_SECTION, STUB_SECTION, STUB_TEXT_SECTION, STUB_TOP_SECTION,
    R_MIPS_26, R_MIPS_32, R_MIPS_GPREL16, R_MIPS_HI16, R_MIPS_LO16, R_MIPS_PC16,
    LOADER_RELOCS, TYPE_SECTION,
    align_up, reloc_name, sign_extend_16,
)
from .modinfo import ModuleInfo
from .nid import SYSLIB
from .stubs import EXPORT_ENTRY, STUB_ENTRY, STUB_SIZE

logger = logging.getLogger(__name__)

# _gp sits this far past the start of writable data
GP_DISPLACEMENT = 0x7ff0

# file format
ELF_IDENT = b'\x7fELF' + bytes([1, 1, 1, 0]) + bytes(8)
ELF_HEADER = struct.Struct('<16sHHIIIIIHHHHHH')
PROGRAM_HEADER = struct.Struct('<8I')
SECTION_HEADER = struct.Struct('<10I')
SYMBOL = struct.Struct('<IIIBBH')
REL = struct.Struct('<II')

ET_PRX = 0xffa0
EM_MIPS = 8
EV_CURRENT = 1

PT_LOAD = 1
PT_PRXRELOC = 0x700000a0

SHT_NULL = 0
SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOBITS = 8
SHT_PRXRELOC = 0x700000a0

SHN_ABS = 0xfff1
STB_LOCAL = 0
STB_GLOBAL = 1
STT_NOTYPE = 0
STT_OBJECT = 1
STT_FUNC = 2

SEGMENT_ALIGN = 16
KERNEL_PADDR = 0x80000000
SEGMENT_INDEX = 0

# firmware section order; anything else sorts by kind
CODE_ORDER = ('.init', '.text', '.fini')
RODATA_ORDER = (MODULE_INFO_SECTION, RESIDENT_SECTION, NID_SECTION)
STUB_ORDER = (STUB_TOP_SECTION, STUB_SECTION, STUB_BTM_SECTION)
ENT_ORDER = (ENT_TOP_SECTION, ENT_SECTION, ENT_BTM_SECTION)

ExportRecord = namedtuple('ExportRecord', 'library name identifier address')
ImportRecord = namedtuple('ImportRecord', 'library name identifier stub')
PRXSection = namedtuple('PRXSection', 'name type flags address size align')
PRXSymbol = namedtuple('PRXSymbol', 'name address size type section exported')


def _rank(section):
    name = section.name
    if section.kind == KIND_CODE:
        if name in CODE_ORDER:
            return (0, CODE_ORDER.index(name))
        if name == STUB_TEXT_SECTION:
            return (0, len(CODE_ORDER) + 1)
        return (0, len(CODE_ORDER))
    if name in RODATA_ORDER:
        return (1, RODATA_ORDER.index(name))
    if name in STUB_ORDER:
        return (2, STUB_ORDER.index(name))
    if name in ENT_ORDER:
        return (3, ENT_ORDER.index(name))
    if section.kind == KIND_DATA:
        return (4, 0)
    if section.kind == KIND_BSS:
        return (5, 0)
    return (1, len(RODATA_ORDER))


def canonical_order(sections):
    """
    Allocated sections in load order; input order is kept within each group
    """
    return sorted((s for s in sections if s.allocated), key=_rank)


class LoaderRelocation:
    """
    A word the loader patches once it knows the load address
    """

    def __init__(self, address, kind):
        if kind not in LOADER_RELOCS:
            raise ValueError(f'{reloc_name(kind)} is not a loader relocation')
        self.address = address
        self.kind = kind

    @property
    def info(self):
        return self.kind | (SEGMENT_INDEX << 8) | (SEGMENT_INDEX << 16)

    def __eq__(self, other):
        return (isinstance(other, LoaderRelocation)
                and (self.address, self.kind) == (other.address, other.kind))

    def __repr__(self):
        return f'LoaderRelocation(0x{self.address:08x}, {reloc_name(self.kind)})'


class PlacedSection:

    def __init__(self, name, kind, address, data, size, align):
        self.name = name
        self.kind = kind
        self.address = address
        self.data = bytes(data)
        self.size = size
        self.align = align

    @property
    def end(self):
        return self.address + self.size

    def __repr__(self):
        where = 'unplaced' if self.address is None else f'0x{self.address:08x}'
        return f'PlacedSection({self.name!r}, {self.kind}, {where}, size=0x{self.size:x})'


class LinkedModule:
    """
    A fully laid out module; addresses are absolute for the base it was linked at
    """

    def __init__(self, image, sections, debug_sections, symbols, relocations,
                 base=0, kernel_mode=False, stripped=False):
        self.image = image
        self.sections = list(sections)
        self.debug_sections = list(debug_sections)
        self.symbols = dict(symbols)
        self.relocations = list(relocations)
        self.base = base
        self.kernel_mode = kernel_mode
        self.stripped = stripped
        self._by_name = {s.name: s for s in self.sections}

    @property
    def resolution(self):
        if self.image.origin is None:
            return None
        return self.image.origin[1]

    @property
    def mem_size(self):
        if not self.sections:
            return 0
        return max(s.end for s in self.sections) - self.base

    @property
    def file_size(self):
        ends = [s.end for s in self.sections if s.kind != KIND_BSS]
        if not ends:
            return 0
        return max(ends) - self.base

    @property
    def module_info_address(self):
        section = self._by_name.get(MODULE_INFO_SECTION)
        return None if section is None else section.address

    @property
    def entry(self):
        resolution = self.resolution
        if resolution is not None:
            for entry in resolution.exports.get(SYSLIB, ()):
                if entry.name == 'module_start':
                    return self.symbols[entry.key]
        for name in ('module_start', '_start'):
            if name in self.symbols:
                return self.symbols[name]
        return 0

    def has_section(self, name):
        return name in self._by_name

    def section(self, name):
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f'no section {name}') from None

    def segment(self):
        """
        The file image of the module: every non-bss section at its address, base 0
        """
        image = bytearray(self.file_size)
        for section in self.sections:
            if section.kind != KIND_BSS and section.size:
                start = section.address - self.base
                image[start:start + section.size] = section.data
        return bytes(image)

    def module_info(self):
        address = self.module_info_address
        if address is None:
            return None
        return ModuleInfo.unpack(self.segment(), address - self.base)

    def _word(self, segment, address):
        offset = address - self.base
        return struct.unpack_from('<I', segment, offset)[0]

    def _string(self, segment, address):
        offset = address - self.base
        end = segment.index(b'\0', offset)
        return segment[offset:end].decode('ascii', errors='replace')

    def _name_for(self, library, identifier, exported):
        resolution = self.resolution
        if resolution is not None:
            entry = resolution.by_identifier(library, identifier, exported)
            if entry is not None:
                return entry.name
        return None

    def exports(self):
        """
        The export tables as the loader sees them
        """
        if not self.has_section(ENT_SECTION):
            return []
        segment = self.segment()
        table = self.section(ENT_SECTION)
        records = list()
        offset = 0
        while offset + EXPORT_ENTRY.size <= table.size:
            name_ptr, _, _, words, vcount, fcount, entries = EXPORT_ENTRY.unpack_from(table.data, offset)
            library = SYSLIB if name_ptr == 0 else self._string(segment, name_ptr)
            count = vcount + fcount
            for index in range(count):
                identifier = self._word(segment, entries + 4 * index)
                address = self._word(segment, entries + 4 * (count + index))
                records.append(ExportRecord(library, self._name_for(library, identifier, True),
                                            identifier, address))
            offset += max(words, 1) * 4
        return records

    def imports(self):
        """
        The import stub tables as the loader sees them
        """
        if not self.has_section(STUB_SECTION):
            return []
        segment = self.segment()
        table = self.section(STUB_SECTION)
        records = list()
        offset = 0
        while offset + STUB_ENTRY.size <= table.size:
            name_ptr, _, _, words, _, fcount, nids, stubs = STUB_ENTRY.unpack_from(table.data, offset)
            library = self._string(segment, name_ptr)
            for index in range(fcount):
                identifier = self._word(segment, nids + 4 * index)
                records.append(ImportRecord(library, self._name_for(library, identifier, False),
                                            identifier, stubs + STUB_SIZE * index))
            offset += max(words, 1) * 4
        return records


class ModuleLinker:
    """
    Lay out a rewritten image and resolve its relocations
    """

    def __init__(self, kernel_mode=False, base=0, pinned=None):
        if base & (SEGMENT_ALIGN - 1):
            raise ValueError(f'base 0x{base:x} is not {SEGMENT_ALIGN}-byte aligned')
        self._kernel_mode = kernel_mode
        self._base = base
        self._pinned = dict(pinned or {})

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument('--kernel-mode',
                            action='store_true',
                            default=False,
                            help='mark the module as eligible to run in kernel mode')

    @classmethod
    def from_args(cls, args):
        return cls(kernel_mode=args.kernel_mode)

    def _place(self, ordered):
        addresses = dict()
        cursor = 0
        for section in ordered:
            natural = align_up(cursor, section.align)
            offset = natural
            if section.name in self._pinned:
                offset = self._pinned[section.name] - self._base
                if offset < natural:
                    raise ValueError(f'section {section.name} pinned at 0x{offset:x}, '
                                     f'below its natural position 0x{natural:x}')
                if offset & (section.align - 1):
                    raise ValueError(f'section {section.name} pinned at unaligned 0x{offset:x}')
            addresses[section.name] = self._base + offset
            logger.debug(f'{section.name}: 0x{self._base + offset:08x} size 0x{section.size:x}')
            cursor = offset + section.size
        return addresses

    def _linker_symbols(self, ordered, addresses):
        def first(kinds, default):
            found = [addresses[s.name] for s in ordered if s.kind in kinds]
            return found[0] if found else default

        def last_end(kinds, default):
            found = [addresses[s.name] + s.size for s in ordered if s.kind in kinds]
            return found[-1] if found else default

        end = max([addresses[s.name] + s.size for s in ordered] + [self._base])
        fdata = first((KIND_DATA, KIND_BSS), end)
        edata = last_end((KIND_DATA,), fdata)
        return {
            '_ftext': first((KIND_CODE,), self._base),
            '_etext': last_end((KIND_CODE,), self._base),
            '_fdata': fdata,
            '_edata': edata,
            '__bss_start': first((KIND_BSS,), edata),
            '_end': end,
            '_gp': fdata + GP_DISPLACEMENT,
        }

    def _symbol_addresses(self, image, ordered, addresses):
        """
        Returns the address of every defined symbol, and the keys of those
        that stay put when the module moves
        """
        table = dict()
        absolute = set()
        for symbol in image.symbols:
            if not symbol.defined:
                continue
            if symbol.section == ABS_SECTION:
                table[symbol.key] = symbol.value
                absolute.add(symbol.key)
            elif symbol.section in addresses:
                table[symbol.key] = addresses[symbol.section] + symbol.value
            else:
                # debug sections have no address
                table[symbol.key] = symbol.value
        for name, value in self._linker_symbols(ordered, addresses).items():
            table.setdefault(name, value)
        return table, absolute

    def _modinfo_data(self, image):
        section = image.section(MODULE_INFO_SECTION)
        info = ModuleInfo.unpack(section.data)
        if self._kernel_mode and not info.kernel_mode:
            return info.with_kernel_mode(True).pack(), True
        return section.data, info.kernel_mode

    def link(self, image):
        ordered = canonical_order(image.sections)
        addresses = self._place(ordered)
        symbols, absolute = self._symbol_addresses(image, ordered, addresses)

        contents = {s.name: bytearray(s.data) for s in image.sections}
        kernel_mode = self._kernel_mode
        if image.has_section(MODULE_INFO_SECTION):
            data, kernel_mode = self._modinfo_data(image)
            contents[MODULE_INFO_SECTION] = bytearray(data)

        loader = list()
        for section in ordered + [s for s in image.sections if s.kind == KIND_DEBUG]:
            relocations = image.relocations_in(section.name)
            if relocations:
                loader += self._apply(section, relocations, contents[section.name],
                                      addresses.get(section.name), symbols, absolute)

        placed = [PlacedSection(s.name, s.kind, addresses[s.name], contents[s.name], s.size, s.align)
                  for s in ordered]
        debug = [PlacedSection(s.name, s.kind, None, contents[s.name], s.size, s.align)
                 for s in image.sections if s.kind == KIND_DEBUG]

        module = LinkedModule(image, placed, debug, symbols, loader,
                              base=self._base, kernel_mode=kernel_mode)
        logger.info(f'linked {image.name}: 0x{module.file_size:x} bytes in file, '
                    f'0x{module.mem_size:x} in memory, {len(loader)} loader relocations')
        return module

    def _apply(self, section, relocations, data, address, symbols, absolute=frozenset()):
        """
        Patch one section; returns its loader relocations with each HI16 ahead of its LO16
        """
        emitted = list()
        held = dict()
        pairs = self._pair_hi16(relocations)
        gp = symbols['_gp']

        for index, reloc in enumerate(relocations):
            if reloc.offset < 0 or reloc.offset + reloc.width > section.size:
                raise RelocationOutOfRange(section.name, reloc.offset, reloc_name(reloc.kind), reloc.offset,
                                           f'offset outside section of size 0x{section.size:x}')
            if reloc.symbol not in symbols:
                raise UnresolvedImport(reloc.symbol, section.name, reloc.offset)

            place = reloc.offset if address is None else address + reloc.offset
            value = self._patch(section.name, reloc, data, place, symbols[reloc.symbol], gp)

            if address is None or reloc.kind not in LOADER_RELOCS:
                continue
            if reloc.symbol in absolute:
                if reloc.kind == R_MIPS_26:
                    raise RelocationOutOfRange(section.name, reloc.offset, 'R_MIPS_26', value,
                                               f'jump to absolute symbol {reloc.symbol} cannot move with the module')
                # patched above, the loader leaves it alone
                continue
            record = LoaderRelocation(place - self._base, reloc.kind)
            if reloc.kind == R_MIPS_HI16:
                partner = pairs.get(index)
                if partner is None:
                    raise RelocationOutOfRange(section.name, reloc.offset, 'R_MIPS_HI16', value,
                                               'no matching R_MIPS_LO16')
                lo = relocations[partner]
                if (value ^ (symbols[lo.symbol] + lo.addend)) & 0xffff:
                    raise RelocationOutOfRange(section.name, reloc.offset, 'R_MIPS_HI16', value,
                                               f'paired R_MIPS_LO16 at +0x{lo.offset:x} '
                                               f'computes a different low half')
                held.setdefault(partner, list()).append(record)
                continue
            emitted += held.pop(index, [])
            emitted.append(record)
        return emitted

    @staticmethod
    def _pair_hi16(relocations):
        pairs = dict()
        for index, reloc in enumerate(relocations):
            if reloc.kind != R_MIPS_HI16:
                continue
            for later in range(index + 1, len(relocations)):
                candidate = relocations[later]
                if candidate.kind == R_MIPS_LO16 and candidate.symbol == reloc.symbol:
                    pairs[index] = later
                    break
        return pairs

    def _patch(self, name, reloc, data, place, symbol, gp):
        offset = reloc.offset
        kind = reloc_name(reloc.kind)
        word = struct.unpack_from('<I', data, offset)[0]
        value = symbol + reloc.addend

        if reloc.kind in (R_MIPS_32, R_MIPS_HI16, R_MIPS_LO16):
            if not 0 <= value <= 0xffffffff:
                raise RelocationOutOfRange(name, offset, kind, value)
            if reloc.kind == R_MIPS_32:
                word = value
            elif reloc.kind == R_MIPS_HI16:
                word = (word & 0xffff0000) | (((value + 0x8000) >> 16) & 0xffff)
            else:
                word = (word & 0xffff0000) | (value & 0xffff)

        elif reloc.kind == R_MIPS_26:
            if value & 3:
                raise RelocationOutOfRange(name, offset, kind, value, f'target 0x{value:x} is not word aligned')
            if not 0 <= value <= 0xffffffff or (value ^ (place + 4)) & 0xf0000000:
                raise RelocationOutOfRange(name, offset, kind, value,
                                           f'target 0x{value:x} outside the 256MiB region of 0x{place:x}')
            word = (word & 0xfc000000) | ((value >> 2) & 0x03ffffff)

        elif reloc.kind == R_MIPS_PC16:
            value -= place
            if value & 3 or not -0x20000 <= value < 0x20000:
                raise RelocationOutOfRange(name, offset, kind, value & 0xffffffff,
                                           f'branch displacement {value} out of range')
            word = (word & 0xffff0000) | ((value >> 2) & 0xffff)

        elif reloc.kind == R_MIPS_GPREL16:
            value -= gp
            if not -0x8000 <= value <= 0x7fff:
                raise RelocationOutOfRange(name, offset, kind, value & 0xffffffff,
                                           f'{value} bytes from _gp does not fit 16 bits')
            word = (word & 0xffff0000) | (value & 0xffff)

        else:
            raise RelocationOutOfRange(name, offset, kind, value, 'unsupported relocation')

        struct.pack_into('<I', data, offset, word & 0xffffffff)
        return value


def relocate(data, relocations, base):
    """
    Apply loader relocations to a module image placed at base, the way the
    firmware loader does: each HI16 waits for the next LO16 to rebuild its value.
    """
    image = bytearray(data)
    pending = list()

    for reloc in relocations:
        address = reloc.address
        word = struct.unpack_from('<I', image, address)[0]

        if reloc.kind == R_MIPS_32:
            struct.pack_into('<I', image, address, (word + base) & 0xffffffff)

        elif reloc.kind == R_MIPS_26:
            target = ((word & 0x03ffffff) << 2) + base
            struct.pack_into('<I', image, address, (word & 0xfc000000) | ((target >> 2) & 0x03ffffff))

        elif reloc.kind == R_MIPS_HI16:
            pending.append(address)

        elif reloc.kind == R_MIPS_LO16:
            lo = sign_extend_16(word)
            for hi_address in pending:
                hi_word = struct.unpack_from('<I', image, hi_address)[0]
                value = ((hi_word & 0xffff) << 16) + lo + base
                struct.pack_into('<I', image, hi_address,
                                 (hi_word & 0xffff0000) | (((value + 0x8000) >> 16) & 0xffff))
            pending = list()
            struct.pack_into('<I', image, address, (word & 0xffff0000) | ((lo + base) & 0xffff))

        else:
            raise ValueError(f'{reloc_name(reloc.kind)} at 0x{address:x} is not a loader relocation')

    if pending:
        raise ValueError(f'R_MIPS_HI16 at 0x{pending[0]:x} has no following R_MIPS_LO16')
    return bytes(image)


class _StringTable:

    def __init__(self):
        self.data = bytearray(b'\0')
        self._offsets = {'': 0}

    def add(self, name):
        if name not in self._offsets:
            self._offsets[name] = len(self.data)
            self.data += name.encode('utf-8') + b'\0'
        return self._offsets[name]


def _section_flags(kind):
    flags = SH_FLAGS.SHF_ALLOC
    if kind == KIND_CODE:
        flags |= SH_FLAGS.SHF_EXECINSTR
    elif kind in (KIND_DATA, KIND_BSS):
        flags |= SH_FLAGS.SHF_WRITE
    return flags


class PRXFile:
    """
    A PRX module file: one loadable segment and its relocation table
    """

    def __init__(self, segment, mem_size, module_info_offset, relocations,
                 entry=0, flags=0, kernel_mode=False, sections=(), symbols=(), debug_sections=()):
        self.segment = bytes(segment)
        self.mem_size = mem_size
        self.module_info_offset = module_info_offset
        self.relocations = list(relocations)
        self.entry = entry
        self.flags = flags
        self.kernel_mode = kernel_mode
        self.sections = list(sections)
        self.symbols = list(symbols)
        self.debug_sections = list(debug_sections)

    @classmethod
    def from_module(cls, module):
        if module.base != 0:
            raise RuntimeError(f'cannot write a module linked at 0x{module.base:x}, link it at 0')
        if module.module_info_address is None:
            raise RuntimeError(f'module {module.image.name} has no {MODULE_INFO_SECTION}')

        sections = [PRXSection(s.name,
                               SHT_NOBITS if s.kind == KIND_BSS else SHT_PROGBITS,
                               _section_flags(s.kind),
                               s.address, s.size, s.align)
                    for s in module.sections]

        symbols = list()
        debug_sections = list()
        if not module.stripped:
            for symbol in module.image.symbols:
                if not symbol.defined or symbol.type == TYPE_SECTION:
                    continue
                if symbol.section != ABS_SECTION and not module.has_section(symbol.section):
                    continue
                symbols.append(PRXSymbol(symbol.key, module.symbols[symbol.key], symbol.size,
                                         symbol.type, symbol.section, symbol.binding == BIND_EXPORT))
            debug_sections = [(s.name, s.data) for s in module.debug_sections]

        return cls(segment=module.segment(),
                   mem_size=module.mem_size,
                   module_info_offset=module.module_info_address,
                   relocations=module.relocations,
                   entry=module.entry,
                   flags=module.image.flags,
                   kernel_mode=module.kernel_mode,
                   sections=sections,
                   symbols=symbols,
                   debug_sections=debug_sections)

    @property
    def module_info(self):
        return ModuleInfo.unpack(self.segment, self.module_info_offset)

    @classmethod
    def load(cls, fo):
        """
        Parse a PRX module file
        """
        data = fo.read()
        if len(data) < ELF_HEADER.size or data[:4] != ELF_IDENT[:4]:
            raise RuntimeError('not an ELF file')
        fields = ELF_HEADER.unpack_from(data, 0)
        ident, e_type, machine, _, entry, phoff, shoff, flags, _, phentsize, phnum, \
            shentsize, shnum, shstrndx = fields
        if e_type != ET_PRX:
            raise RuntimeError(f'ELF type 0x{e_type:04x} is not a PRX module')
        if machine != EM_MIPS:
            raise RuntimeError(f'machine {machine} is not MIPS')
        if phoff + phnum * phentsize > len(data) or shoff + shnum * shentsize > len(data):
            raise RuntimeError('header / file size mismatch')

        load = None
        reloc_table = None
        for index in range(phnum):
            header = PROGRAM_HEADER.unpack_from(data, phoff + index * phentsize)
            if header[0] == PT_LOAD and load is None:
                load = header
            elif header[0] == PT_PRXRELOC:
                reloc_table = header
        if load is None:
            raise RuntimeError('no loadable segment')

        _, offset, _, paddr, filesz, memsz, _, _ = load
        if offset + filesz > len(data):
            raise RuntimeError('segment runs past end of file')
        segment = data[offset:offset + filesz]
        kernel_mode = bool(paddr & KERNEL_PADDR)
        module_info_offset = (paddr & ~KERNEL_PADDR) - offset

        relocations = list()
        if reloc_table is not None:
            start, size = reloc_table[1], reloc_table[4]
            for position in range(start, start + size, REL.size):
                address, info = REL.unpack_from(data, position)
                relocations.append(LoaderRelocation(address, info & 0xff))

        if shnum == 0:
            raise RuntimeError('no section headers')
        if shstrndx >= shnum:
            raise RuntimeError(f'section name table {shstrndx} out of range')
        headers = [SECTION_HEADER.unpack_from(data, shoff + index * shentsize) for index in range(shnum)]
        names = headers[shstrndx]

        def section_name(header):
            start = names[4] + header[0]
            return data[start:data.index(b'\0', start)].decode('utf-8')

        sections = list()
        symbols = list()
        debug_sections = list()
        for header in headers[1:]:
            name = section_name(header)
            sh_type, sh_flags, addr, sh_offset, sh_size, link = header[1:7]
            if sh_flags & SH_FLAGS.SHF_ALLOC:
                sections.append(PRXSection(name, sh_type, sh_flags, addr, sh_size, header[8]))
            elif sh_type == SHT_PROGBITS:
                debug_sections.append((name, data[sh_offset:sh_offset + sh_size]))
            elif sh_type == SHT_SYMTAB:
                symbols = cls._load_symbols(data, header, headers[link], sections)

        return cls(segment=segment,
                   mem_size=memsz,
                   module_info_offset=module_info_offset,
                   relocations=relocations,
                   entry=entry,
                   flags=flags,
                   kernel_mode=kernel_mode,
                   sections=sections,
                   symbols=symbols,
                   debug_sections=debug_sections)

    @staticmethod
    def _load_symbols(data, header, strtab, sections):
        symbols = list()
        for position in range(header[4] + SYMBOL.size, header[4] + header[5], SYMBOL.size):
            name, value, size, info, _, shndx = SYMBOL.unpack_from(data, position)
            start = strtab[4] + name
            text = data[start:data.index(b'\0', start)].decode('utf-8')
            if shndx == SHN_ABS:
                section = ABS_SECTION
            else:
                section = sections[shndx - 1].name
            types = {STT_FUNC: 'func', STT_OBJECT: 'object'}
            symbols.append(PRXSymbol(text, value, size, types.get(info & 0xf, 'notype'),
                                     section, (info >> 4) == STB_GLOBAL))
        return symbols

    def save(self, fo):
        """
        Write the module to a file
        """
        shstrtab = _StringTable()
        headers = [(0,) * 10]
        blobs = list()

        segment_offset = align_up(ELF_HEADER.size + 2 * PROGRAM_HEADER.size, SEGMENT_ALIGN)
        blobs.append((segment_offset, self.segment))

        for section in self.sections:
            offset = segment_offset + min(section.address, len(self.segment))
            headers.append((shstrtab.add(section.name), section.type, section.flags,
                            section.address, offset, section.size, 0, 0, section.align, 0))

        reloc_offset = align_up(segment_offset + len(self.segment), 4)
        reloc_data = b''.join(REL.pack(r.address, r.info) for r in self.relocations)
        blobs.append((reloc_offset, reloc_data))
        headers.append((shstrtab.add('.rel.prx'), SHT_PRXRELOC, 0, 0, reloc_offset, len(reloc_data),
                        0, 0, 4, REL.size))
        cursor = reloc_offset + len(reloc_data)

        for name, data in self.debug_sections:
            headers.append((shstrtab.add(name), SHT_PROGBITS, 0, 0, cursor, len(data), 0, 0, 1, 0))
            blobs.append((cursor, data))
            cursor += len(data)

        if self.symbols:
            cursor = align_up(cursor, 4)
            symtab, strtab, first_global = self._symbol_table()
            symtab_index = len(headers)
            headers.append((shstrtab.add('.symtab'), SHT_SYMTAB, 0, 0, cursor, len(symtab),
                            symtab_index + 1, first_global, 4, SYMBOL.size))
            blobs.append((cursor, symtab))
            cursor += len(symtab)
            headers.append((shstrtab.add('.strtab'), SHT_STRTAB, 0, 0, cursor, len(strtab), 0, 0, 1, 0))
            blobs.append((cursor, strtab))
            cursor += len(strtab)

        shstrndx = len(headers)
        name_offset = shstrtab.add('.shstrtab')
        names = bytes(shstrtab.data)
        headers.append((name_offset, SHT_STRTAB, 0, 0, cursor, len(names), 0, 0, 1, 0))
        blobs.append((cursor, names))
        cursor += len(names)

        shoff = align_up(cursor, 4)
        paddr = segment_offset + self.module_info_offset
        if self.kernel_mode:
            paddr |= KERNEL_PADDR

        output = bytearray(shoff + len(headers) * SECTION_HEADER.size)
        ELF_HEADER.pack_into(output, 0,
                             ELF_IDENT, ET_PRX, EM_MIPS, EV_CURRENT, self.entry,
                             ELF_HEADER.size, shoff, self.flags, ELF_HEADER.size,
                             PROGRAM_HEADER.size, 2, SECTION_HEADER.size, len(headers), shstrndx)
        PROGRAM_HEADER.pack_into(output, ELF_HEADER.size,
                                 PT_LOAD, segment_offset, 0, paddr, len(self.segment), self.mem_size,
                                 P_FLAGS.PF_R | P_FLAGS.PF_W | P_FLAGS.PF_X, SEGMENT_ALIGN)
        PROGRAM_HEADER.pack_into(output, ELF_HEADER.size + PROGRAM_HEADER.size,
                                 PT_PRXRELOC, reloc_offset, 0, 0, len(reloc_data), 0, 0, 4)
        for offset, blob in blobs:
            output[offset:offset + len(blob)] = blob
        for index, header in enumerate(headers):
            SECTION_HEADER.pack_into(output, shoff + index * SECTION_HEADER.size, *header)

        fo.write(output)

    def _symbol_table(self):
        strtab = _StringTable()
        index = {s.name: position + 1 for position, s in enumerate(self.sections)}
        types = {'func': STT_FUNC, 'object': STT_OBJECT}
        ordered = ([s for s in self.symbols if not s.exported]
                   + [s for s in self.symbols if s.exported])

        table = bytearray(SYMBOL.size)
        for symbol in ordered:
            bind = STB_GLOBAL if symbol.exported else STB_LOCAL
            shndx = SHN_ABS if symbol.section == ABS_SECTION else index[symbol.section]
            table += SYMBOL.pack(strtab.add(symbol.name), symbol.address & 0xffffffff, symbol.size,
                                 (bind << 4) | types.get(symbol.type, STT_NOTYPE), 0, shndx)
        first_global = 1 + len([s for s in ordered if not s.exported])
        return bytes(table), bytes(strtab.data), first_global

    @property
    def file_size(self):
        return len(self.segment)

    @property
    def bss_size(self):
        return self.mem_size - len(self.segment)


def main(argv=None):
    parser = argparse.ArgumentParser(description='PRX module inspector')
    parser.add_argument('prxFile',
                        type=str,
                        help='the module to inspect')
    parser.add_argument('--dump',
                        action='store_true',
                        help='hexdump the loadable segment')
    args = parser.parse_args(argv)

    with open(args.prxFile, 'rb') as fo:
        prx = PRXFile.load(fo)

    info = prx.module_info
    print(f'module {info.name} v{info.version[0]}.{info.version[1]} attr 0x{info.attributes:04x}'
          f'{" (kernel)" if prx.kernel_mode else ""}')
    print(f'file 0x{prx.file_size:x} memory 0x{prx.mem_size:x} entry 0x{prx.entry:08x} '
          f'module info 0x{prx.module_info_offset:08x} gp 0x{info.gp:08x}')
    print(f'exports 0x{info.ent_top:08x}-0x{info.ent_end:08x} imports 0x{info.stub_top:08x}-0x{info.stub_end:08x}')
    print('sections')
    for section in prx.sections:
        print(f'  0x{section.address:08x} 0x{section.size:06x} {section.name}')
    print(f'reloc {len(prx.relocations)}')
    for reloc in prx.relocations:
        print(f'  0x{reloc.address:08x}: {reloc_name(reloc.kind)}')
    if args.dump:
        print('segment')
        hexdump(prx.segment)
    return 0


if __name__ == '__main__':
    sys.exit(main())
