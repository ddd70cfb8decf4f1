#
# Import stub and export table synthesis
#
# Imports become 8-byte stubs in .sceStub.text that the firmware patches into
# jumps at load time; each library gets a descriptor in .lib.stub pointing at
# its identifier list (.rodata.sceNid) and its stubs. Exports get a descriptor
# in .lib.ent pointing at an identifier/address table in .rodata.sceResident.
#

import logging
import struct

from .errors import MalformedImage, StubTableOverflow, UnresolvedImport
from .image import (
    BIND_IMPORT, BIND_LOCAL, BIND_UNDEFINED,
    ENT_BTM_SECTION, ENT_SECTION, ENT_TOP_SECTION,
    KIND_CODE, KIND_EXPORT_TABLE, KIND_MARKER, KIND_METADATA, KIND_STUB_TABLE,
    LINKER_SYMBOLS, MODULE_INFO_SECTION, NID_SECTION, R_MIPS_32, RESIDENT_SECTION,
    STUB_BTM_SECTION, STUB_SECTION, STUB_TEXT_SECTION, STUB_TOP_SECTION,
    TYPE_FUNC, TYPE_OBJECT, TYPE_SECTION,
    Relocation, Section, Symbol,
)
from .modinfo import (
    ENT_END_OFFSET, ENT_TOP_OFFSET, GP_OFFSET, MAX_NAME_LENGTH, MODULE_INFO_SIZE,
    STUB_END_OFFSET, STUB_TOP_OFFSET, MODULE_USER,
    ModuleInfo,
)
from .nid import SYSLIB

logger = logging.getLogger(__name__)

# jr $ra; nop - replaced by the firmware with j <target>; nop
STUB_INSTRUCTIONS = struct.pack('<II', 0x03e00008, 0x00000000)
STUB_SIZE = len(STUB_INSTRUCTIONS)

# SceLibraryStubTable
STUB_ENTRY = struct.Struct('<IHHBBHII')
STUB_ENTRY_WORDS = STUB_ENTRY.size // 4
IMPORT_VERSION = 0x0011
IMPORT_ATTRIBUTE = 0x4001

# SceLibraryEntryTable
EXPORT_ENTRY = struct.Struct('<IHHBBHI')
EXPORT_ENTRY_WORDS = EXPORT_ENTRY.size // 4
EXPORT_VERSION = 0x0000
EXPORT_ATTRIBUTE = 0x0001
SYSLIB_ATTRIBUTE = 0x8000

# widths of the count fields in the descriptors
MAX_FUNCTIONS = 0xffff
MAX_VARIABLES = 0xff

MARKER_SYMBOLS = {
    STUB_TOP_SECTION: '__lib_stub_top',
    STUB_BTM_SECTION: '__lib_stub_bottom',
    ENT_TOP_SECTION: '__lib_ent_top',
    ENT_BTM_SECTION: '__lib_ent_bottom',
}

MODULE_INFO_SYMBOL = 'module_info'


def stub_symbol(entry):
    return f'__stub_{entry.library}_{entry.name}'


class StubRewriter:
    """
    Add loader tables to an image and route import references through stubs
    """

    def __init__(self, name=None, version=None, attributes=None):
        self._name = name
        self._version = version
        self._attributes = attributes

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument('--name',
                            type=str,
                            metavar='MODULE-NAME',
                            help=f'module name (at most {MAX_NAME_LENGTH} characters, default: input name)')
        parser.add_argument('--module-version',
                            type=_parse_version,
                            metavar='MAJOR.MINOR',
                            help='module version (default: 1.1)')

    @classmethod
    def from_args(cls, args):
        return cls(name=args.name, version=args.module_version)

    def module_info(self, image):
        """
        The module descriptor: explicit settings win over a descriptor found in the input
        """
        seed = None
        if image.has_section(MODULE_INFO_SECTION):
            try:
                seed = ModuleInfo.unpack(image.section(MODULE_INFO_SECTION).data)
            except ValueError as e:
                raise MalformedImage(MODULE_INFO_SECTION, str(e)) from e

        name = self._name or (seed.name if seed else image.name[:MAX_NAME_LENGTH])
        version = self._version or (seed.version if seed else (1, 1))
        if self._attributes is not None:
            attributes = self._attributes
        else:
            attributes = seed.attributes if seed else MODULE_USER
        try:
            return ModuleInfo(name, version, attributes)
        except ValueError as e:
            raise MalformedImage(MODULE_INFO_SECTION, str(e), hint='check --name / --module-version') from e

    def rewrite(self, image, resolution):
        info = self.module_info(image)

        # the input's own descriptor is replaced
        sections = [s for s in image.sections if s.name != MODULE_INFO_SECTION]
        symbols = [s for s in image.symbols
                   if s.section != MODULE_INFO_SECTION and s.name != MODULE_INFO_SYMBOL]
        relocations = self._route_imports(image, resolution)

        tables = _TableBuilder(resolution)
        tables.build()

        new_sections = tables.sections() + [self._module_info_section(info)]
        for marker in MARKER_SYMBOLS:
            new_sections.append(Section(marker, KIND_MARKER, preserve=True))

        new_symbols = tables.symbols()
        for marker, name in MARKER_SYMBOLS.items():
            new_symbols.append(Symbol(name, BIND_LOCAL, section=marker))
        new_symbols.append(Symbol(MODULE_INFO_SYMBOL, BIND_LOCAL, section=MODULE_INFO_SECTION,
                                  size=MODULE_INFO_SIZE, type=TYPE_OBJECT))
        for section in new_sections:
            new_symbols.append(Symbol(section.name, BIND_LOCAL, section=section.name, type=TYPE_SECTION))

        new_relocations = tables.relocations() + self._module_info_relocations()

        rewritten = image.replace(sections=sections + new_sections,
                                  symbols=symbols + new_symbols,
                                  relocations=relocations + new_relocations,
                                  origin=(image, resolution, self))

        self._check_exports(rewritten, resolution)
        logger.info(f'module {info.name} v{info.version[0]}.{info.version[1]}: '
                    f'{tables.stub_count} import stubs in {len(resolution.imports)} libraries, '
                    f'{tables.export_count} exports in {len(resolution.exports)} libraries')
        return rewritten

    def _route_imports(self, image, resolution):
        routed = list()
        for reloc in image.relocations:
            if reloc.section == MODULE_INFO_SECTION:
                continue
            symbol = image.symbol(reloc.symbol)
            if symbol is None:
                raise MalformedImage(f'{reloc.section}+0x{reloc.offset:x}',
                                     f'relocation against unknown symbol {reloc.symbol!r}')
            if symbol.binding == BIND_UNDEFINED:
                if symbol.name in LINKER_SYMBOLS:
                    routed.append(reloc)
                    continue
                raise UnresolvedImport(symbol.name, reloc.section, reloc.offset)
            if symbol.binding == BIND_IMPORT:
                entry = resolution.lookup(symbol.key)
                if entry is None:
                    raise UnresolvedImport(symbol.key, reloc.section, reloc.offset)
                logger.debug(f'{reloc.section}+0x{reloc.offset:x}: {symbol.key} -> {stub_symbol(entry)}')
                reloc = reloc.replace(symbol=stub_symbol(entry))
            routed.append(reloc)
        return routed

    @staticmethod
    def _module_info_section(info):
        return Section(MODULE_INFO_SECTION, KIND_METADATA, data=info.pack(), align=4, preserve=True)

    @staticmethod
    def _module_info_relocations():
        fields = (
            (GP_OFFSET, '_gp'),
            (ENT_TOP_OFFSET, MARKER_SYMBOLS[ENT_TOP_SECTION]),
            (ENT_END_OFFSET, MARKER_SYMBOLS[ENT_BTM_SECTION]),
            (STUB_TOP_OFFSET, MARKER_SYMBOLS[STUB_TOP_SECTION]),
            (STUB_END_OFFSET, MARKER_SYMBOLS[STUB_BTM_SECTION]),
        )
        return [Relocation(MODULE_INFO_SECTION, offset, R_MIPS_32, symbol) for offset, symbol in fields]

    @staticmethod
    def _check_exports(image, resolution):
        for entries in resolution.exports.values():
            for entry in entries:
                symbol = image.symbol(entry.key)
                if symbol is None or not symbol.defined:
                    raise UnresolvedImport(entry.key, ENT_SECTION, 0)


class _TableBuilder:
    """
    Lay out stub, identifier and export tables for one resolution
    """

    def __init__(self, resolution):
        self._resolution = resolution
        self._stub_text = bytearray()
        self._nids = bytearray()
        self._resident = bytearray()
        self._stub_table = bytearray()
        self._ent_table = bytearray()
        self._symbols = list()
        self._relocations = list()
        self._names = dict()
        self.stub_count = 0
        self.export_count = 0

    def build(self):
        for table, what in ((self._resolution.imports, 'import libraries'),
                            (self._resolution.exports, 'export libraries')):
            if len(table) > MAX_FUNCTIONS:
                raise StubTableOverflow('*', len(table), MAX_FUNCTIONS, what)

        for library in self._resolution.imports:
            self._library_name(library)
        for library in self._resolution.exports:
            if library != SYSLIB:
                self._library_name(library)

        for library, entries in self._resolution.imports.items():
            self._import_library(library, entries)

        # syslib always comes first
        exports = self._resolution.exports
        ordered = [lib for lib in exports if lib == SYSLIB] + [lib for lib in exports if lib != SYSLIB]
        for library in ordered:
            self._export_library(library, exports[library])

    def _library_name(self, library):
        try:
            raw = library.encode('ascii')
        except UnicodeEncodeError as e:
            raise MalformedImage(library, 'library name is not ASCII',
                                 hint='the firmware matches library names byte for byte') from e
        self._names[library] = len(self._resident)
        self._resident += raw + b'\0'
        self._pad(self._resident)

    @staticmethod
    def _pad(buffer):
        while len(buffer) % 4:
            buffer.append(0)

    def _pointer(self, section, offset, symbol, addend=0):
        self._relocations.append(Relocation(section, offset, R_MIPS_32, symbol, addend))

    def _import_library(self, library, entries):
        if len(entries) > MAX_FUNCTIONS:
            raise StubTableOverflow(library, len(entries), MAX_FUNCTIONS, 'imported functions')

        nid_offset = len(self._nids)
        stub_offset = len(self._stub_text)
        for entry in entries:
            self._symbols.append(Symbol(stub_symbol(entry), BIND_LOCAL, section=STUB_TEXT_SECTION,
                                        value=len(self._stub_text), size=STUB_SIZE, type=TYPE_FUNC))
            self._stub_text += STUB_INSTRUCTIONS
            self._nids += struct.pack('<I', entry.identifier)
        self.stub_count += len(entries)

        descriptor = len(self._stub_table)
        self._stub_table += STUB_ENTRY.pack(0, IMPORT_VERSION, IMPORT_ATTRIBUTE,
                                            STUB_ENTRY_WORDS, 0, len(entries), 0, 0)
        self._pointer(STUB_SECTION, descriptor, RESIDENT_SECTION, self._names[library])
        self._pointer(STUB_SECTION, descriptor + 12, NID_SECTION, nid_offset)
        self._pointer(STUB_SECTION, descriptor + 16, STUB_TEXT_SECTION, stub_offset)
        logger.debug(f'import library {library}: {len(entries)} stubs at +0x{stub_offset:x}')

    def _export_library(self, library, entries):
        functions = [entry for entry in entries if not entry.variable]
        variables = [entry for entry in entries if entry.variable]
        if len(functions) > MAX_FUNCTIONS:
            raise StubTableOverflow(library, len(functions), MAX_FUNCTIONS, 'exported functions')
        if len(variables) > MAX_VARIABLES:
            raise StubTableOverflow(library, len(variables), MAX_VARIABLES, 'exported variables')

        ordered = functions + variables
        table = len(self._resident)
        for entry in ordered:
            self._resident += struct.pack('<I', entry.identifier)
        for entry in ordered:
            self._pointer(RESIDENT_SECTION, len(self._resident), entry.key)
            self._resident += struct.pack('<I', 0)
        self.export_count += len(ordered)

        descriptor = len(self._ent_table)
        if library == SYSLIB:
            attribute = SYSLIB_ATTRIBUTE
        else:
            attribute = EXPORT_ATTRIBUTE
            self._pointer(ENT_SECTION, descriptor, RESIDENT_SECTION, self._names[library])
        self._ent_table += EXPORT_ENTRY.pack(0, EXPORT_VERSION, attribute, EXPORT_ENTRY_WORDS,
                                             len(variables), len(functions), 0)
        self._pointer(ENT_SECTION, descriptor + 12, RESIDENT_SECTION, table)
        logger.debug(f'export library {library}: {len(functions)} functions, {len(variables)} variables')

    def sections(self):
        sections = [
            Section(RESIDENT_SECTION, KIND_METADATA, data=self._resident, preserve=True),
            Section(ENT_SECTION, KIND_EXPORT_TABLE, data=self._ent_table, preserve=True),
        ]
        if self._stub_text:
            sections += [
                Section(STUB_TEXT_SECTION, KIND_CODE, data=self._stub_text, preserve=True),
                Section(NID_SECTION, KIND_METADATA, data=self._nids, preserve=True),
                Section(STUB_SECTION, KIND_STUB_TABLE, data=self._stub_table, preserve=True),
            ]
        return sections

    def symbols(self):
        return list(self._symbols)

    def relocations(self):
        return list(self._relocations)


def _parse_version(text):
    try:
        major, minor = text.split('.', 1)
        return int(major), int(minor)
    except ValueError:
        raise ValueError(f'bad version {text!r}, expected MAJOR.MINOR') from None
