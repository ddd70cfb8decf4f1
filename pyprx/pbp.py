#!/usr/bin/env python
#
# EBOOT.PBP container
#
# A 40-byte header holding the offset of each of eight payloads in fixed
# order, followed by the payloads. Sizes are not stored; each payload runs
# to the next offset.
#

import argparse
import logging
import os
import struct
import sys

from .errors import BuildError, MissingRequiredAsset
from .output import read_file, write_file

logger = logging.getLogger(__name__)

PBP_MAGIC = b'\0PBP'
PBP_VERSION = 0x00010000

PARAM_SFO = 'PARAM.SFO'
ICON0_PNG = 'ICON0.PNG'
ICON1_PMF = 'ICON1.PMF'
PIC0_PNG = 'PIC0.PNG'
PIC1_PNG = 'PIC1.PNG'
SND0_AT3 = 'SND0.AT3'
DATA_PSP = 'DATA.PSP'
DATA_PSAR = 'DATA.PSAR'

PBP_TAGS = (PARAM_SFO, ICON0_PNG, ICON1_PMF, PIC0_PNG, PIC1_PNG, SND0_AT3, DATA_PSP, DATA_PSAR)
REQUIRED_TAGS = (PARAM_SFO, DATA_PSP)

HEADER = struct.Struct('<4sI8I')
PAYLOAD_ALIGN = 4

# placeholder for an absent payload on the command line
ABSENT = 'NULL'


def _align(value):
    return (value + PAYLOAD_ALIGN - 1) & ~(PAYLOAD_ALIGN - 1)


class ContainerEntry:

    def __init__(self, tag, offset, size):
        self.tag = tag
        self.offset = offset
        self.size = size

    @property
    def end(self):
        return self.offset + self.size

    def __eq__(self, other):
        return (isinstance(other, ContainerEntry)
                and (self.tag, self.offset, self.size) == (other.tag, other.offset, other.size))

    def __repr__(self):
        return f'ContainerEntry({self.tag}, 0x{self.offset:x}, 0x{self.size:x})'


class PBPFile:
    """
    An EBOOT.PBP container; payloads are keyed by tag, absent tags are simply missing
    """

    def __init__(self, payloads):
        self.payloads = dict()
        for tag, data in payloads.items():
            if tag not in PBP_TAGS:
                raise ValueError(f'unknown container tag {tag!r}')
            if data:
                self.payloads[tag] = bytes(data)

    def entries(self):
        """
        The directory: every tag in fixed order, absent ones as zero-length
        entries at the offset of whatever follows
        """
        for tag in REQUIRED_TAGS:
            if tag not in self.payloads:
                raise MissingRequiredAsset(tag)

        entries = list()
        cursor = HEADER.size
        for tag in PBP_TAGS:
            cursor = _align(cursor)
            size = len(self.payloads.get(tag, b''))
            entries.append(ContainerEntry(tag, cursor, size))
            cursor += size
        return entries

    def pack(self):
        entries = self.entries()
        output = bytearray(entries[-1].end)
        HEADER.pack_into(output, 0, PBP_MAGIC, PBP_VERSION, *[entry.offset for entry in entries])
        for entry in entries:
            if entry.size:
                output[entry.offset:entry.end] = self.payloads[entry.tag]
                logger.debug(f'{entry.tag}: 0x{entry.size:x} bytes at 0x{entry.offset:x}')
        return bytes(output)

    def save(self, fo):
        fo.write(self.pack())

    @classmethod
    def unpack(cls, data):
        """
        Parse a container; trailing alignment padding stays with the payload it follows
        """
        if len(data) < HEADER.size:
            raise RuntimeError('PBP header truncated')
        fields = HEADER.unpack_from(data, 0)
        if fields[0] != PBP_MAGIC:
            raise RuntimeError(f'invalid PBP magic {fields[0]!r}')
        if fields[1] != PBP_VERSION:
            logger.warning(f'unexpected PBP version 0x{fields[1]:08x}')

        offsets = list(fields[2:]) + [len(data)]
        payloads = dict()
        for index, tag in enumerate(PBP_TAGS):
            start, end = offsets[index], offsets[index + 1]
            if not HEADER.size <= start <= end <= len(data):
                raise RuntimeError(f'{tag}: bad offset 0x{start:x}')
            if end > start:
                payloads[tag] = data[start:end]
        return cls(payloads)

    @classmethod
    def load(cls, fo):
        return cls.unpack(fo.read())

    def __getitem__(self, tag):
        return self.payloads.get(tag, b'')


def read_assets(paths):
    """
    Read payloads from a {tag: path} mapping; None paths are skipped
    """
    payloads = dict()
    for tag, path in paths.items():
        if path is not None:
            payloads[tag] = read_file(path, stage='ContainerPacker')
    return payloads


def add_arguments(parser):
    parser.add_argument('--icon',
                        type=str,
                        metavar='ICON0.PNG',
                        help='menu icon')
    parser.add_argument('--icon-animation',
                        type=str,
                        metavar='ICON1.PMF',
                        help='animated menu icon')
    parser.add_argument('--title-image',
                        type=str,
                        metavar='PIC0.PNG',
                        help='information image shown over the background')
    parser.add_argument('--background',
                        type=str,
                        metavar='PIC1.PNG',
                        help='menu background')
    parser.add_argument('--audio',
                        type=str,
                        metavar='SND0.AT3',
                        help='menu background music')
    parser.add_argument('--psar',
                        type=str,
                        metavar='DATA.PSAR',
                        help='additional data archive')


def assets_from_args(args):
    return {
        ICON0_PNG: args.icon,
        ICON1_PMF: args.icon_animation,
        PIC0_PNG: args.title_image,
        PIC1_PNG: args.background,
        SND0_AT3: args.audio,
        DATA_PSAR: args.psar,
    }


def _pack(args):
    paths = dict()
    for tag, path in zip(PBP_TAGS, args.inputs):
        paths[tag] = None if path == ABSENT else path
    container = PBPFile(read_assets(paths))
    write_file(args.pbpFile, container.pack(), stage='ContainerPacker')


def _unpack(args):
    with open(args.pbpFile, 'rb') as fo:
        container = PBPFile.load(fo)
    for tag in PBP_TAGS:
        data = container[tag]
        if data:
            write_file(os.path.join(args.output_dir, tag), data, stage='ContainerPacker')


def main(argv=None):
    parser = argparse.ArgumentParser(description='EBOOT.PBP packer')
    subparsers = parser.add_subparsers(dest='command', required=True)

    pack = subparsers.add_parser('pack', help='build a container')
    pack.add_argument('pbpFile',
                      type=str,
                      help='the container to write')
    pack.add_argument('inputs',
                      type=str,
                      nargs=len(PBP_TAGS),
                      metavar='FILE',
                      help=f'payloads in order {", ".join(PBP_TAGS)}; {ABSENT} for an absent one')
    pack.set_defaults(handler=_pack)

    unpack = subparsers.add_parser('unpack', help='extract the payloads of a container')
    unpack.add_argument('pbpFile',
                        type=str,
                        help='the container to read')
    unpack.add_argument('--output-dir',
                        type=str,
                        default='.',
                        metavar='DIR',
                        help='where to write the payloads')
    unpack.set_defaults(handler=_unpack)

    args = parser.parse_args(argv)
    try:
        args.handler(args)
    except BuildError as e:
        print(f'error: {e}', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
