#
# Run the module stages over a sample object
#

from pyprx.elf import read_image
from pyprx.nid import IdentifierResolver
from pyprx.prx import ModuleLinker
from pyprx.stubs import StubRewriter


def rewrite_sample(path, name=None, resolver=None):
    image = read_image(str(path))
    resolution = (resolver or IdentifierResolver()).resolve(image)
    return StubRewriter(name=name).rewrite(image, resolution)


def link_sample(path, kernel_mode=False, base=0, name=None):
    return ModuleLinker(kernel_mode=kernel_mode, base=base).link(rewrite_sample(path, name=name))
