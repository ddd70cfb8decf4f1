#
# Symbol identifiers (NIDs)
#
# The firmware links imports and exports by a 32-bit identifier instead of
# the symbol name: the first four bytes of the SHA-1 digest of the name,
# little-endian.
#

import hashlib
import json
import logging
from collections import OrderedDict

from .errors import IdentifierCollision, IoFailure
from .image import BIND_EXPORT, BIND_IMPORT, TYPE_OBJECT

logger = logging.getLogger(__name__)

SYSLIB = 'syslib'

# module entry points the firmware looks up in syslib; (name, is_variable)
SYSLIB_ENTRIES = (
    ('module_start', False),
    ('module_stop', False),
    ('module_info', True),
    ('module_start_thread_parameter', True),
    ('module_stop_thread_parameter', True),
    ('module_sdk_version', True),
)

KNOWN_LIBRARIES = {
    SYSLIB: {
        'module_start': 0xd632acdb,
        'module_stop': 0xcee8593c,
        'module_info': 0xf01d73a7,
        'module_start_thread_parameter': 0x0f7c276c,
        'module_stop_thread_parameter': 0xcf0cc697,
        'module_sdk_version': 0x11b97506,
    },
}


def nid_for(name):
    """
    Identifier for a symbol name
    """
    digest = hashlib.sha1(name.encode('utf-8')).digest()
    return int.from_bytes(digest[:4], 'little')


def load_reference(path):
    """
    Load known-library reference data from a JSON file of the form
    {"Library": {"name": "0x12345678" or 305419896, ...}, ...}
    """
    try:
        with open(path, 'r', encoding='utf-8') as fo:
            raw = json.load(fo)
    except OSError as e:
        raise IoFailure(path, f'cannot read reference data: {e.strerror}',
                        stage='IdentifierResolver') from e
    except ValueError as e:
        raise IoFailure(path, f'reference data is not valid JSON: {e}',
                        stage='IdentifierResolver', hint='expected {"Library": {"name": "0x..."}}') from e

    reference = dict()
    for library, entries in raw.items():
        table = reference.setdefault(library, dict())
        for name, identifier in entries.items():
            if isinstance(identifier, str):
                try:
                    identifier = int(identifier, 0)
                except ValueError:
                    raise IoFailure(path, f'{library}:{name}: bad identifier {identifier!r}',
                                    stage='IdentifierResolver') from None
            table[name] = identifier & 0xffffffff
    return reference


def merge_reference(*tables):
    merged = dict()
    for table in tables:
        for library, entries in table.items():
            merged.setdefault(library, dict()).update(entries)
    return merged


class ResolvedSymbol:
    """
    An import or export with its identifier

    `key` is the image symbol that provides the address of an export, or that
    relocations use to refer to an import.
    """

    def __init__(self, name, library, identifier, exported, key, variable=False, verified=False):
        self.name = name
        self.library = library
        self.identifier = identifier
        self.exported = exported
        self.key = key
        self.variable = variable
        self.verified = verified

    def __repr__(self):
        direction = 'export' if self.exported else 'import'
        return f'ResolvedSymbol({direction} {self.library}:{self.name} 0x{self.identifier:08x})'


class Resolution:
    """
    Read-only indices over the resolved imports and exports of one image
    """

    def __init__(self, symbols):
        self.symbols = tuple(symbols)

        self.imports = OrderedDict()
        self.exports = OrderedDict()
        self._by_key = dict()
        self._by_identifier = dict()

        for entry in self.symbols:
            tables = self.exports if entry.exported else self.imports
            tables.setdefault(entry.library, list()).append(entry)
            self._by_identifier[(entry.library, entry.identifier, entry.exported)] = entry
            if not entry.exported:
                self._by_key[entry.key] = entry

        for tables in (self.imports, self.exports):
            for library in tables:
                tables[library] = tuple(tables[library])

    def lookup(self, key):
        """the import relocations refer to as key, if any"""
        return self._by_key.get(key)

    def by_identifier(self, library, identifier, exported=False):
        return self._by_identifier.get((library, identifier, exported))

    @property
    def unverified(self):
        return [entry for entry in self.symbols if not entry.verified]

    def without(self, removed):
        """a new Resolution lacking the entries in removed"""
        removed = set(id(entry) for entry in removed)
        return Resolution(entry for entry in self.symbols if id(entry) not in removed)


class IdentifierResolver:
    """
    Compute identifiers for the imports and exports of an image
    """

    def __init__(self, reference=None, derive=nid_for):
        if reference is None:
            reference = KNOWN_LIBRARIES
        self._reference = reference
        self._derive = derive

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument('--nid-reference',
                            type=str,
                            action='append',
                            default=list(),
                            metavar='JSON-FILE',
                            help='known library identifiers used to verify computed ones')

    @classmethod
    def from_args(cls, args):
        tables = [KNOWN_LIBRARIES] + [load_reference(path) for path in args.nid_reference]
        return cls(reference=merge_reference(*tables))

    def identifier(self, name):
        return self._derive(name) & 0xffffffff

    def _verify(self, library, name, identifier):
        known = self._reference.get(library, dict()).get(name)
        if known is None:
            logger.debug(f'{library}:{name} 0x{identifier:08x} is not in the reference data')
            return False
        if known != identifier:
            logger.warning(f'{library}:{name}: computed identifier 0x{identifier:08x} '
                           f'differs from known 0x{known:08x}')
            return False
        return True

    def _entry(self, name, library, exported, key, variable=False):
        identifier = self.identifier(name)
        return ResolvedSymbol(name, library, identifier, exported, key,
                              variable=variable,
                              verified=self._verify(library, name, identifier))

    def _syslib_entries(self, image):
        entries = list()
        for name, variable in SYSLIB_ENTRIES:
            key = None
            if name == 'module_info':
                # the module descriptor is always synthesized
                key = name
            elif image.symbol(name) is not None and image.symbol(name).defined:
                key = name
            elif name == 'module_start' and image.symbol('_start') is not None \
                    and image.symbol('_start').defined:
                key = '_start'
            if key is not None:
                entries.append(self._entry(name, SYSLIB, True, key, variable=variable))
        return entries

    def resolve(self, image):
        entries = self._syslib_entries(image)
        seen = set((entry.library, entry.name, True) for entry in entries)

        for symbol in image.symbols:
            if symbol.binding == BIND_IMPORT:
                exported = False
            elif symbol.binding == BIND_EXPORT:
                exported = True
            else:
                continue
            if (symbol.library, symbol.name, exported) in seen:
                if exported and symbol.library == SYSLIB:
                    logger.debug(f'syslib export {symbol.name} already provided')
                continue
            seen.add((symbol.library, symbol.name, exported))
            entries.append(self._entry(symbol.name, symbol.library, exported, symbol.key,
                                       variable=(exported and symbol.type == TYPE_OBJECT)))

        self._check_collisions(entries)
        resolution = Resolution(entries)

        for entry in resolution.unverified:
            logger.info(f'unverified identifier {entry.library}:{entry.name} = 0x{entry.identifier:08x}')
        logger.info(f'resolved {len(resolution.imports)} import libraries, '
                    f'{len(resolution.exports)} export libraries')
        return resolution

    @staticmethod
    def _check_collisions(entries):
        claimed = dict()
        for entry in entries:
            slot = (entry.library, entry.exported, entry.identifier)
            other = claimed.get(slot)
            if other is not None:
                raise IdentifierCollision(entry.library, other.name, entry.name, entry.identifier)
            claimed[slot] = entry
