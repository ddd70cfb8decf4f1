#
# pyprx: MIPS ELF to PRX module / EBOOT.PBP toolchain
#

__version__ = '0.1.0'
