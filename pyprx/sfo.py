#!/usr/bin/env python
#
# PARAM.SFO metadata record
#
# A flat key/value table read by the firmware menu: a header, one index
# entry per field, a key table and a data table in which every value owns
# its declared maximum size.
#

import argparse
import logging
import re
import struct
import sys
from collections import OrderedDict

from .errors import BuildError, FieldTooLong
from .output import write_file

logger = logging.getLogger(__name__)

SFO_MAGIC = b'\0PSF'
SFO_VERSION = 0x00000101

HEADER = struct.Struct('<4sIIII')
INDEX_ENTRY = struct.Struct('<HHIII')

# value formats
FMT_UTF8_RAW = 0x0004
FMT_UTF8 = 0x0204
FMT_INT32 = 0x0404

TYPE_INT = 'int'
TYPE_STR = 'str'
TYPE_RAW = 'raw'

FORMATS = {
    TYPE_RAW: FMT_UTF8_RAW,
    TYPE_STR: FMT_UTF8,
    TYPE_INT: FMT_INT32,
}

KEY_PATTERN = re.compile(r'^[A-Z0-9_]{1,31}$')

# key: (type, maximum size, default); fields with a default are always written
CATALOGUE = OrderedDict([
    ('BOOTABLE', (TYPE_INT, 4, 1)),
    ('CATEGORY', (TYPE_STR, 4, 'MG')),
    ('DISC_ID', (TYPE_STR, 16, 'UCJS10041')),
    ('DISC_VERSION', (TYPE_STR, 8, '1.00')),
    ('PARENTAL_LEVEL', (TYPE_INT, 4, 1)),
    ('PSP_SYSTEM_VER', (TYPE_STR, 8, '1.00')),
    ('REGION', (TYPE_INT, 4, 0x8000)),
    ('TITLE', (TYPE_STR, 128, 'homebrew app')),
    ('APP_VER', (TYPE_STR, 8, None)),
    ('ATTRIBUTE', (TYPE_INT, 4, None)),
    ('MEMSIZE', (TYPE_INT, 4, None)),
    ('HRKGMP_VER', (TYPE_INT, 4, None)),
    ('LANGUAGE', (TYPE_INT, 4, None)),
])


def _round4(value):
    return (value + 3) & ~3


class SFOEntry:
    """
    One field of the record
    """

    def __init__(self, key, type, max_size, value):
        if not KEY_PATTERN.match(key):
            raise ValueError(f'bad SFO key {key!r}')
        if type not in FORMATS:
            raise ValueError(f'field {key}: unknown type {type!r}')
        if type == TYPE_INT:
            max_size = 4
        self.key = key
        self.type = type
        self.max_size = max_size
        self.value = value

    def encode(self):
        """
        Returns (used length, data padded to the maximum size)
        """
        if self.type == TYPE_INT:
            value = self.value
            if value < 0:
                raise FieldTooLong(self.key, 4, 4, f'{value} is negative, integers are unsigned')
            if value > 0xffffffff:
                raise FieldTooLong(self.key, (value.bit_length() + 7) // 8, 4)
            return 4, struct.pack('<I', value)

        raw = self.value.encode('utf-8')
        if len(raw) > self.max_size:
            raise FieldTooLong(self.key, len(raw), self.max_size)
        if self.type == TYPE_STR and len(raw) < self.max_size:
            raw += b'\0'
        return len(raw), raw.ljust(self.max_size, b'\0')

    def __repr__(self):
        return f'SFOEntry({self.key}, {self.type}[{self.max_size}], {self.value!r})'


def entry_for(key, value):
    """
    A field with its catalogue type and size; unknown keys get one fitted to the value
    """
    if key in CATALOGUE:
        type, max_size, _ = CATALOGUE[key]
        if type == TYPE_INT and isinstance(value, str):
            value = int(value, 0)
        elif type != TYPE_INT and not isinstance(value, str):
            value = str(value)
        return SFOEntry(key, type, max_size, value)
    if isinstance(value, int):
        return SFOEntry(key, TYPE_INT, 4, value)
    return SFOEntry(key, TYPE_STR, _round4(len(value.encode('utf-8')) + 1), value)


class SFOFile:
    """
    A PARAM.SFO record; entries are kept in declaration order
    """

    def __init__(self, entries):
        self.entries = list(entries)
        seen = set()
        for entry in self.entries:
            if entry.key in seen:
                raise ValueError(f'duplicate SFO key {entry.key}')
            seen.add(entry.key)

    @classmethod
    def from_fields(cls, fields=(), defaults=True):
        """
        Build a record from (key, value) pairs on top of the catalogue defaults
        """
        values = OrderedDict()
        if defaults:
            for key, (_, _, default) in CATALOGUE.items():
                if default is not None:
                    values[key] = default
        if hasattr(fields, 'items'):
            fields = fields.items()
        for key, value in fields:
            values[key] = value
        return cls(entry_for(key, value) for key, value in values.items())

    def ordered(self):
        """
        Entries in serialization order: ascending maximum size, then declaration order
        """
        return sorted(self.entries, key=lambda entry: entry.max_size)

    def encode(self):
        entries = self.ordered()
        keys = bytearray()
        data = bytearray()
        index = bytearray()
        for entry in entries:
            used, value = entry.encode()
            index += INDEX_ENTRY.pack(len(keys), FORMATS[entry.type], used, entry.max_size, len(data))
            keys += entry.key.encode('ascii') + b'\0'
            data += value
        keys = keys.ljust(_round4(len(keys)), b'\0')

        key_offset = HEADER.size + len(index)
        data_offset = key_offset + len(keys)
        header = HEADER.pack(SFO_MAGIC, SFO_VERSION, key_offset, data_offset, len(entries))
        logger.debug(f'SFO: {len(entries)} fields, {data_offset + len(data)} bytes')
        return header + bytes(index) + bytes(keys) + bytes(data)

    def save(self, fo):
        fo.write(self.encode())

    @classmethod
    def decode(cls, data):
        """
        Parse a record; string values stop at the first NUL
        """
        if len(data) < HEADER.size:
            raise RuntimeError('SFO header truncated')
        magic, version, key_offset, data_offset, count = HEADER.unpack_from(data, 0)
        if magic != SFO_MAGIC:
            raise RuntimeError(f'invalid SFO magic {magic!r}')
        if version != SFO_VERSION:
            logger.warning(f'unexpected SFO version 0x{version:08x}')
        if HEADER.size + count * INDEX_ENTRY.size > len(data):
            raise RuntimeError('SFO index runs past end of file')

        types = dict((fmt, name) for name, fmt in FORMATS.items())
        entries = list()
        for position in range(count):
            key_start, fmt, used, max_size, value_start = \
                INDEX_ENTRY.unpack_from(data, HEADER.size + position * INDEX_ENTRY.size)
            start = key_offset + key_start
            end = data.find(b'\0', start)
            if end < 0:
                raise RuntimeError(f'SFO key {position} is not terminated')
            key = data[start:end].decode('ascii')
            if fmt not in types:
                raise RuntimeError(f'field {key}: unknown format 0x{fmt:04x}')

            start = data_offset + value_start
            if start + used > len(data):
                raise RuntimeError(f'field {key}: value runs past end of file')
            raw = data[start:start + used]
            if types[fmt] == TYPE_INT:
                value = struct.unpack('<I', raw)[0]
            else:
                value = raw.split(b'\0', 1)[0].decode('utf-8')
            entries.append(SFOEntry(key, types[fmt], max_size, value))
        return cls(entries)

    @classmethod
    def load(cls, fo):
        return cls.decode(fo.read())

    def fields(self):
        return OrderedDict((entry.key, entry.value) for entry in self.entries)

    def __getitem__(self, key):
        for entry in self.entries:
            if entry.key == key:
                return entry.value
        raise KeyError(key)


def parse_field(text):
    """
    KEY=VALUE; numeric values become integers unless the key is a catalogue string
    """
    key, sep, value = text.partition('=')
    if not sep or not KEY_PATTERN.match(key):
        raise argparse.ArgumentTypeError(f'bad field {text!r}, expected KEY=VALUE')
    if key in CATALOGUE:
        if CATALOGUE[key][0] != TYPE_INT:
            return key, value
    try:
        return key, int(value, 0)
    except ValueError:
        if key in CATALOGUE:
            raise argparse.ArgumentTypeError(f'field {key} needs an integer value') from None
        return key, value


def parse_string_field(text):
    key, sep, value = text.partition('=')
    if not sep or not KEY_PATTERN.match(key):
        raise argparse.ArgumentTypeError(f'bad field {text!r}, expected KEY=VALUE')
    return key, value


def parse_int_field(text):
    key, sep, value = text.partition('=')
    if not sep or not KEY_PATTERN.match(key):
        raise argparse.ArgumentTypeError(f'bad field {text!r}, expected KEY=VALUE')
    try:
        return key, int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f'field {key} needs an integer value') from None


def add_arguments(parser):
    parser.add_argument('--title',
                        type=str,
                        metavar='TITLE',
                        help='title shown in the menu')
    parser.add_argument('--sfo',
                        type=parse_field,
                        action='append',
                        default=list(),
                        metavar='KEY=VALUE',
                        help='set a PARAM.SFO field (may be repeated)')


def fields_from_args(args):
    fields = list()
    if args.title is not None:
        fields.append(('TITLE', args.title))
    fields += args.sfo
    return fields


def main(argv=None):
    parser = argparse.ArgumentParser(description='PARAM.SFO builder',
                                     fromfile_prefix_chars='@',
                                     epilog='Read options from a file: @CONFIG-FILENAME')
    parser.add_argument('sfoFile',
                        type=str,
                        help='the record to write (or read with --dump)')
    parser.add_argument('--dump',
                        action='store_true',
                        help='print the fields of an existing record')
    parser.add_argument('-s', '--string',
                        type=parse_string_field,
                        action='append',
                        default=list(),
                        metavar='KEY=VALUE',
                        help='set a string field')
    parser.add_argument('-d', '--dword',
                        type=parse_int_field,
                        action='append',
                        default=list(),
                        metavar='KEY=VALUE',
                        help='set an integer field')
    add_arguments(parser)
    args = parser.parse_args(argv)

    if args.dump:
        with open(args.sfoFile, 'rb') as fo:
            record = SFOFile.load(fo)
        for entry in record.entries:
            value = f'0x{entry.value:x}' if entry.type == TYPE_INT else repr(entry.value)
            print(f'{entry.key:<16} {entry.type:<4} {entry.max_size:>4} {value}')
        return 0

    fields = fields_from_args(args) + args.string + args.dword
    try:
        write_file(args.sfoFile, SFOFile.from_fields(fields).encode(), stage='MetadataEncoder')
    except BuildError as e:
        print(f'error: {e}', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
