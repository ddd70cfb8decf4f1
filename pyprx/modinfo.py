#
# Module descriptor (.rodata.sceModuleInfo)
#

import struct

MODULE_INFO_FORMAT = '<HBB28s5I'
MODULE_INFO_SIZE = struct.calcsize(MODULE_INFO_FORMAT)

# byte offsets of the pointer fields
GP_OFFSET = 32
ENT_TOP_OFFSET = 36
ENT_END_OFFSET = 40
STUB_TOP_OFFSET = 44
STUB_END_OFFSET = 48

# attribute bits
MODULE_USER = 0x0000
MODULE_NO_STOP = 0x0001
MODULE_SINGLE_LOAD = 0x0002
MODULE_SINGLE_START = 0x0004
MODULE_KERNEL = 0x1000

MAX_NAME_LENGTH = 27


class ModuleInfo:
    """
    The descriptor the loader finds through the first program header
    """

    def __init__(self, name, version=(1, 1), attributes=MODULE_USER,
                 gp=0, ent_top=0, ent_end=0, stub_top=0, stub_end=0):
        encoded = name.encode('ascii', errors='replace')
        if len(encoded) > MAX_NAME_LENGTH:
            raise ValueError(f'module name {name!r} longer than {MAX_NAME_LENGTH} bytes')
        major, minor = version
        if not (0 <= major <= 0xff and 0 <= minor <= 0xff):
            raise ValueError(f'module version {major}.{minor} out of range')

        self.name = name
        self.version = (major, minor)
        self.attributes = attributes & 0xffff
        self.gp = gp
        self.ent_top = ent_top
        self.ent_end = ent_end
        self.stub_top = stub_top
        self.stub_end = stub_end

    @property
    def kernel_mode(self):
        return bool(self.attributes & MODULE_KERNEL)

    def with_kernel_mode(self, enabled):
        attributes = self.attributes | MODULE_KERNEL if enabled else self.attributes & ~MODULE_KERNEL
        return ModuleInfo(self.name, self.version, attributes,
                          self.gp, self.ent_top, self.ent_end, self.stub_top, self.stub_end)

    def pack(self):
        major, minor = self.version
        return struct.pack(MODULE_INFO_FORMAT,
                           self.attributes,
                           minor,
                           major,
                           self.name.encode('ascii', errors='replace'),
                           self.gp & 0xffffffff,
                           self.ent_top & 0xffffffff,
                           self.ent_end & 0xffffffff,
                           self.stub_top & 0xffffffff,
                           self.stub_end & 0xffffffff)

    @classmethod
    def unpack(cls, data, offset=0):
        if len(data) - offset < MODULE_INFO_SIZE:
            raise ValueError(f'module info truncated ({len(data) - offset} bytes)')
        fields = struct.unpack_from(MODULE_INFO_FORMAT, data, offset)
        name = fields[3].split(b'\0', 1)[0].decode('ascii', errors='replace')
        return cls(name=name,
                   version=(fields[2], fields[1]),
                   attributes=fields[0],
                   gp=fields[4],
                   ent_top=fields[5],
                   ent_end=fields[6],
                   stub_top=fields[7],
                   stub_end=fields[8])

    def __repr__(self):
        return (f'ModuleInfo({self.name!r}, v{self.version[0]}.{self.version[1]}, '
                f'attr=0x{self.attributes:04x})')
