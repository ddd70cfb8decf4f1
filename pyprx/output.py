#
# Artifact output
#
# Files are written to a temporary name beside their destination and renamed
# into place once complete; a failed write leaves nothing at the final path.
# Leftovers from a killed process match '.<name>.*.tmp'.
#

import contextlib
import logging
import os
import tempfile

from .errors import IoFailure

logger = logging.getLogger(__name__)

TEMP_SUFFIX = '.tmp'


def _discard(path):
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


@contextlib.contextmanager
def atomic_output(path, stage='build'):
    """
    Context manager yielding a binary file object that replaces path on success
    """
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fo = tempfile.NamedTemporaryFile(mode='wb',
                                         dir=directory,
                                         prefix=f'.{os.path.basename(path)}.',
                                         suffix=TEMP_SUFFIX,
                                         delete=False)
    except OSError as e:
        raise IoFailure(path, f'cannot create temporary file: {e.strerror}', stage=stage) from e

    try:
        with fo:
            yield fo
        os.replace(fo.name, path)
    except OSError as e:
        _discard(fo.name)
        raise IoFailure(path, f'write failed: {e.strerror}', stage=stage) from e
    except BaseException:
        _discard(fo.name)
        raise
    logger.debug(f'wrote {path}')


def write_file(path, data, stage='build'):
    with atomic_output(path, stage=stage) as fo:
        fo.write(data)
    logger.info(f'{path}: {len(data)} bytes')


def read_file(path, stage='build'):
    try:
        with open(path, 'rb') as fo:
            return fo.read()
    except OSError as e:
        raise IoFailure(path, f'cannot read: {e.strerror}', stage=stage,
                        hint='does the path exist?') from e
