#!/usr/bin/env python
#
# Convert a MIPS ELF object into a PRX module, PARAM.SFO and EBOOT.PBP
#

import argparse
import io
import logging
import os
import sys

from . import pbp, sfo
from .elf import read_image
from .errors import BuildError, IoFailure
from .nid import IdentifierResolver
from .output import write_file
from .prx import ModuleLinker, PRXFile
from .stubs import StubRewriter
from .strip import ModuleStripper

logger = logging.getLogger(__name__)

SFO_NAME = 'PARAM.SFO'
PBP_NAME = 'EBOOT.PBP'


def setup_logging(args):
    if args.debug:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(format='%(levelname)s: %(message)s', level=level)


def make_parser():
    parser = argparse.ArgumentParser(description='ELF to PRX / EBOOT.PBP converter',
                                     formatter_class=argparse.ArgumentDefaultsHelpFormatter,
                                     fromfile_prefix_chars='@',
                                     epilog='Read options from a file: @CONFIG-FILENAME')
    parser.add_argument('inputFile',
                        type=str,
                        help='the relocatable ELF object to convert')
    parser.add_argument('outputDir',
                        type=str,
                        help='the directory to write the module, PARAM.SFO and EBOOT.PBP to')
    parser.add_argument('--verbose',
                        action='store_true',
                        help='report what each stage did')
    parser.add_argument('--debug',
                        action='store_true',
                        help='report per-symbol and per-section detail')

    IdentifierResolver.add_arguments(parser)
    StubRewriter.add_arguments(parser)
    ModuleLinker.add_arguments(parser)
    ModuleStripper.add_arguments(parser)
    sfo.add_arguments(parser)
    pbp.add_arguments(parser)
    return parser


def link_module(args):
    """
    Read, resolve, rewrite, link and optionally strip the input
    """
    image = read_image(args.inputFile)
    resolution = IdentifierResolver.from_args(args).resolve(image)
    rewritten = StubRewriter.from_args(args).rewrite(image, resolution)
    module = ModuleLinker.from_args(args).link(rewritten)
    if args.strip:
        module = ModuleStripper.from_args(args).strip(module)
    elif args.drop_export:
        logger.warning('--drop-export has no effect without --strip')
    return module


def build(args):
    """
    Run the pipeline; returns the paths written
    """
    module = link_module(args)
    prx = io.BytesIO()
    PRXFile.from_module(module).save(prx)
    record = sfo.SFOFile.from_fields(sfo.fields_from_args(args)).encode()

    payloads = pbp.read_assets(pbp.assets_from_args(args))
    payloads[pbp.PARAM_SFO] = record
    payloads[pbp.DATA_PSP] = prx.getvalue()
    container = pbp.PBPFile(payloads).pack()

    try:
        os.makedirs(args.outputDir, exist_ok=True)
    except OSError as e:
        raise IoFailure(args.outputDir, f'cannot create output directory: {e.strerror}') from e

    stem = os.path.splitext(os.path.basename(args.inputFile))[0]
    outputs = [
        (os.path.join(args.outputDir, f'{stem}.prx'), prx.getvalue(), 'ModuleLinker'),
        (os.path.join(args.outputDir, SFO_NAME), record, 'MetadataEncoder'),
        (os.path.join(args.outputDir, PBP_NAME), container, 'ContainerPacker'),
    ]
    for path, data, stage in outputs:
        write_file(path, data, stage=stage)
    return [path for path, _, _ in outputs]


def main(argv=None):
    parser = make_parser()
    args = parser.parse_args(argv)
    setup_logging(args)

    try:
        build(args)
    except BuildError as e:
        print(f'error: {e}', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
