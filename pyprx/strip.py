#
# Module stripper
#
# Drops debug sections and the symbol table, prunes import stubs nothing
# calls, and removes exports on request. The module is rewritten and linked
# again with every surviving section held at its previous address, so no
# surviving export moves.
#

import logging

from .errors import UnsafeStrip
from .image import KIND_DEBUG, LOADER_SECTIONS
from .nid import SYSLIB
from .prx import ModuleLinker
from .stubs import stub_symbol

logger = logging.getLogger(__name__)

# the loader cannot start a module without these
REQUIRED_EXPORTS = ((SYSLIB, 'module_info'), (SYSLIB, 'module_start'))


def parse_export(text):
    """
    LIB:NAME -> (library, name)
    """
    library, sep, name = text.partition(':')
    if not sep or not library or not name:
        raise ValueError(f'bad export {text!r}, expected LIBRARY:NAME')
    return library, name


class ModuleStripper:

    def __init__(self, drop_exports=()):
        self._drop = tuple(drop_exports)

    @classmethod
    def add_arguments(cls, parser):
        parser.add_argument('--strip',
                            action='store_true',
                            default=False,
                            help='remove debug information, symbols and unused import stubs')
        parser.add_argument('--drop-export',
                            type=parse_export,
                            action='append',
                            default=list(),
                            metavar='LIB:NAME',
                            help='remove an export while stripping (may be repeated)')

    @classmethod
    def from_args(cls, args):
        return cls(drop_exports=args.drop_export)

    def strip(self, module):
        if module.image.origin is None:
            raise UnsafeStrip('*', '*', 'module was not produced by the stub rewriter')
        source, resolution, rewriter = module.image.origin

        dropped = self._dropped_exports(module, resolution)
        unused = self._unused_imports(module, resolution)
        reduced = resolution.without(dropped + unused)

        rewritten = rewriter.rewrite(self._without_debug(source), reduced)
        pinned = dict((s.name, s.address) for s in module.sections if rewritten.has_section(s.name))
        linker = ModuleLinker(kernel_mode=module.kernel_mode, base=module.base, pinned=pinned)
        try:
            stripped = linker.link(rewritten)
        except ValueError as e:
            raise UnsafeStrip('*', '*', f'layout cannot be kept: {e}') from e
        stripped.stripped = True

        self._verify(module, stripped, dropped)
        logger.info(f'stripped {module.image.name}: {len(unused)} unused imports, '
                    f'{len(dropped)} exports, {len(module.debug_sections)} debug sections removed; '
                    f'0x{module.file_size:x} -> 0x{stripped.file_size:x} bytes')
        return stripped

    def _dropped_exports(self, module, resolution):
        dropped = list()
        for library, name in self._drop:
            if (library, name) in REQUIRED_EXPORTS:
                raise UnsafeStrip(library, name, 'is required by the loader')
            matches = [entry for entry in resolution.exports.get(library, ()) if entry.name == name]
            if not matches:
                raise UnsafeStrip(library, name, 'is not exported by this module')
            entry = matches[0]
            for reloc in module.image.relocations:
                if reloc.symbol != entry.key or reloc.section in LOADER_SECTIONS:
                    continue
                if module.has_section(reloc.section):
                    raise UnsafeStrip(library, name,
                                      f'still referenced from {reloc.section}+0x{reloc.offset:x}')
            logger.debug(f'dropping export {library}:{name}')
            dropped.append(entry)
        return dropped

    @staticmethod
    def _unused_imports(module, resolution):
        referenced = set()
        for reloc in module.image.relocations:
            if reloc.section not in LOADER_SECTIONS and module.has_section(reloc.section):
                referenced.add(reloc.symbol)

        unused = list()
        for entries in resolution.imports.values():
            for entry in entries:
                if stub_symbol(entry) not in referenced:
                    logger.debug(f'pruning unused import {entry.library}:{entry.name}')
                    unused.append(entry)
        return unused

    @staticmethod
    def _without_debug(image):
        debug = set(s.name for s in image.sections if s.kind == KIND_DEBUG)
        if not debug:
            return image
        return image.replace(sections=[s for s in image.sections if s.name not in debug],
                             symbols=[s for s in image.symbols if s.section not in debug],
                             relocations=[r for r in image.relocations if r.section not in debug])

    @staticmethod
    def _verify(before, after, dropped):
        removed = set((entry.library, entry.name) for entry in dropped)
        previous = dict()
        for position, record in enumerate(before.exports()):
            previous[(record.library, record.name)] = (position, record)

        for position, record in enumerate(after.exports()):
            old = previous.get((record.library, record.name))
            if old is None:
                raise UnsafeStrip(record.library, record.name, 'appeared while stripping')
            old_position, old_record = old
            if record.identifier != old_record.identifier:
                raise UnsafeStrip(record.library, record.name,
                                  f'identifier changed from 0x{old_record.identifier:08x} '
                                  f'to 0x{record.identifier:08x}')
            if record.address != old_record.address:
                raise UnsafeStrip(record.library, record.name,
                                  f'moved from 0x{old_record.address:08x} to 0x{record.address:08x}')
            if not removed and position != old_position:
                raise UnsafeStrip(record.library, record.name,
                                  f'moved from table slot {old_position} to {position}')

        survivors = len(previous) - len(removed)
        if len(after.exports()) != survivors:
            raise UnsafeStrip('*', '*', f'{len(after.exports())} exports survived, expected {survivors}')
