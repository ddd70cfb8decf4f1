#
# In-memory program image
#
# A BinaryImage is never modified once built; pipeline stages construct a
# new one with replace().
#

# section kinds
KIND_CODE = 'code'
KIND_RODATA = 'rodata'
KIND_DATA = 'data'
KIND_BSS = 'bss'
KIND_METADATA = 'metadata'
KIND_STUB_TABLE = 'stub-table'
KIND_EXPORT_TABLE = 'export-table'
KIND_MARKER = 'marker'
KIND_DEBUG = 'debug'

ALLOCATED_KINDS = (KIND_CODE, KIND_RODATA, KIND_DATA, KIND_BSS, KIND_METADATA,
                   KIND_STUB_TABLE, KIND_EXPORT_TABLE, KIND_MARKER)

# symbol bindings
BIND_IMPORT = 'import'
BIND_EXPORT = 'export'
BIND_LOCAL = 'local'
BIND_UNDEFINED = 'undefined'

# symbol types
TYPE_FUNC = 'func'
TYPE_OBJECT = 'object'
TYPE_SECTION = 'section'
TYPE_NOTYPE = 'notype'

# relocation types
R_MIPS_NONE = 0
R_MIPS_16 = 1
R_MIPS_32 = 2
R_MIPS_REL32 = 3
R_MIPS_26 = 4
R_MIPS_HI16 = 5
R_MIPS_LO16 = 6
R_MIPS_GPREL16 = 7
R_MIPS_LITERAL = 8
R_MIPS_GOT16 = 9
R_MIPS_PC16 = 10
R_MIPS_CALL16 = 11
R_MIPS_GPREL32 = 12

RELOC_NAMES = {
    R_MIPS_NONE: 'R_MIPS_NONE',
    R_MIPS_16: 'R_MIPS_16',
    R_MIPS_32: 'R_MIPS_32',
    R_MIPS_REL32: 'R_MIPS_REL32',
    R_MIPS_26: 'R_MIPS_26',
    R_MIPS_HI16: 'R_MIPS_HI16',
    R_MIPS_LO16: 'R_MIPS_LO16',
    R_MIPS_GPREL16: 'R_MIPS_GPREL16',
    R_MIPS_LITERAL: 'R_MIPS_LITERAL',
    R_MIPS_GOT16: 'R_MIPS_GOT16',
    R_MIPS_PC16: 'R_MIPS_PC16',
    R_MIPS_CALL16: 'R_MIPS_CALL16',
    R_MIPS_GPREL32: 'R_MIPS_GPREL32',
}

SUPPORTED_RELOCS = (R_MIPS_32, R_MIPS_26, R_MIPS_HI16, R_MIPS_LO16, R_MIPS_GPREL16, R_MIPS_PC16)

# relocations the firmware loader applies; everything else is resolved at link time
LOADER_RELOCS = (R_MIPS_32, R_MIPS_26, R_MIPS_HI16, R_MIPS_LO16)


def reloc_name(kind):
    return RELOC_NAMES.get(kind, f'R_MIPS_{kind}')


def align_up(value, alignment):
    return (value + alignment - 1) & ~(alignment - 1)


def sign_extend_16(value):
    value &= 0xffff
    return value - 0x10000 if value & 0x8000 else value


class Section:
    """
    A named region of the image
    """

    def __init__(self, name, kind, data=b'', align=4, preserve=False, size=None):
        if align < 1 or (align & (align - 1)) != 0:
            raise ValueError(f'section {name}: alignment {align} is not a power of two')
        if kind == KIND_BSS:
            if size is None:
                size = len(data)
            data = b''
        else:
            if size is not None and size != len(data):
                raise ValueError(f'section {name}: size {size} does not match content')
            size = len(data)
        if kind == KIND_MARKER and size != 0:
            raise ValueError(f'marker section {name} must be empty')

        self.name = name
        self.kind = kind
        self.data = bytes(data)
        self.align = align
        self.preserve = preserve
        self.size = size

    @property
    def allocated(self):
        return self.kind in ALLOCATED_KINDS

    def replace(self, **changes):
        fields = {
            'name': self.name,
            'kind': self.kind,
            'data': self.data,
            'align': self.align,
            'preserve': self.preserve,
        }
        if self.kind == KIND_BSS:
            fields['size'] = self.size
        fields.update(changes)
        return Section(**fields)

    def __repr__(self):
        return f'Section({self.name!r}, {self.kind}, size=0x{self.size:x}, align={self.align})'


class Symbol:
    """
    A symbol table entry; imports and exports carry the library they belong to
    """

    def __init__(self, name, binding, library=None, section=None, value=0, size=0, type=TYPE_NOTYPE):
        if binding in (BIND_IMPORT, BIND_EXPORT):
            if not library:
                raise ValueError(f'{binding} symbol {name} needs a library')
        elif library is not None:
            raise ValueError(f'{binding} symbol {name} cannot belong to library {library}')
        if binding == BIND_IMPORT and section is not None:
            raise ValueError(f'imported symbol {name} cannot be defined in {section}')

        self.name = name
        self.binding = binding
        self.library = library
        self.section = section
        self.value = value
        self.size = size
        self.type = type

    @property
    def defined(self):
        return self.section is not None

    @property
    def key(self):
        """name used in relocations: imports and exports are qualified with their library"""
        if self.binding == BIND_IMPORT:
            return f'{self.name}@{self.library}'
        if self.binding == BIND_EXPORT:
            return f'{self.name}@@{self.library}'
        return self.name

    def __repr__(self):
        where = f'{self.section}+0x{self.value:x}' if self.defined else 'undefined'
        return f'Symbol({self.key!r}, {self.binding}, {where})'


class Relocation:
    """
    A reference to symbol+addend at section+offset, patched according to kind
    """

    def __init__(self, section, offset, kind, symbol, addend=0):
        self.section = section
        self.offset = offset
        self.kind = kind
        self.symbol = symbol
        self.addend = addend

    @property
    def width(self):
        return 4

    def replace(self, **changes):
        fields = {
            'section': self.section,
            'offset': self.offset,
            'kind': self.kind,
            'symbol': self.symbol,
            'addend': self.addend,
        }
        fields.update(changes)
        return Relocation(**fields)

    def __repr__(self):
        return (f'Relocation({self.section}+0x{self.offset:x}, {reloc_name(self.kind)}, '
                f'{self.symbol!r}{self.addend:+#x})')


class BinaryImage:
    """
    Sections, symbols and relocations of one program
    """

    def __init__(self, sections, symbols, relocations, name='module', flags=0, origin=None):
        self.sections = tuple(sections)
        self.symbols = tuple(symbols)
        self.relocations = tuple(relocations)
        self.name = name
        self.flags = flags
        # (image, resolution, rewriter) this image was produced from, if rewritten
        self.origin = origin

        self._sections_by_name = dict()
        for section in self.sections:
            if section.name in self._sections_by_name:
                raise ValueError(f'duplicate section {section.name}')
            self._sections_by_name[section.name] = section

        self._symbols_by_key = dict()
        for symbol in self.symbols:
            self._symbols_by_key.setdefault(symbol.key, symbol)

    def replace(self, **changes):
        fields = {
            'sections': self.sections,
            'symbols': self.symbols,
            'relocations': self.relocations,
            'name': self.name,
            'flags': self.flags,
            'origin': self.origin,
        }
        fields.update(changes)
        return BinaryImage(**fields)

    def has_section(self, name):
        return name in self._sections_by_name

    def section(self, name):
        try:
            return self._sections_by_name[name]
        except KeyError:
            raise KeyError(f'no section {name}') from None

    def symbol(self, key):
        return self._symbols_by_key.get(key)

    def symbols_with(self, binding):
        return [symbol for symbol in self.symbols if symbol.binding == binding]

    def relocations_in(self, section_name):
        return [reloc for reloc in self.relocations if reloc.section == section_name]


# sections synthesized for the firmware loader
STUB_TEXT_SECTION = '.sceStub.text'
NID_SECTION = '.rodata.sceNid'
RESIDENT_SECTION = '.rodata.sceResident'
MODULE_INFO_SECTION = '.rodata.sceModuleInfo'
STUB_TOP_SECTION = '.lib.stub.top'
STUB_SECTION = '.lib.stub'
STUB_BTM_SECTION = '.lib.stub.btm'
ENT_TOP_SECTION = '.lib.ent.top'
ENT_SECTION = '.lib.ent'
ENT_BTM_SECTION = '.lib.ent.btm'

LOADER_SECTIONS = (
    STUB_TEXT_SECTION, NID_SECTION, RESIDENT_SECTION, MODULE_INFO_SECTION,
    STUB_TOP_SECTION, STUB_SECTION, STUB_BTM_SECTION,
    ENT_TOP_SECTION, ENT_SECTION, ENT_BTM_SECTION,
)

# defined by the linker once the layout is known
LINKER_SYMBOLS = ('_gp', '_ftext', '_etext', '_fdata', '_edata', '__bss_start', '_end')
