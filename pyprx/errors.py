#
# Build pipeline errors
#
# Every stage fails with one of these; the message always names the stage
# and the offending entity.
#


class BuildError(RuntimeError):
    """
    Base class for all pipeline failures
    """
    stage = 'build'

    def __init__(self, entity, detail, hint=None):
        self.entity = entity
        self.detail = detail
        self.hint = hint
        super().__init__(str(self))

    def __str__(self):
        message = f'{self.stage}: {self.entity}: {self.detail}'
        if self.hint is not None:
            message += f' ({self.hint})'
        return message


class MalformedImage(BuildError):
    stage = 'ImageReader'

    def __init__(self, entity, detail, hint='truncated file or wrong architecture?'):
        super().__init__(entity, detail, hint)


class IdentifierCollision(BuildError):
    stage = 'IdentifierResolver'

    def __init__(self, library, first, second, identifier):
        self.library = library
        self.first = first
        self.second = second
        self.identifier = identifier
        super().__init__(f'library {library}',
                         f'symbols {first!r} and {second!r} share identifier 0x{identifier:08x}')


class UnresolvedImport(BuildError):
    stage = 'StubRewriter'

    def __init__(self, symbol, section, offset):
        self.symbol = symbol
        self.section = section
        self.offset = offset
        super().__init__(f'symbol {symbol!r}',
                         f'referenced from {section}+0x{offset:x} has no import library')


class StubTableOverflow(BuildError):
    stage = 'StubRewriter'

    def __init__(self, library, count, limit, what='entries'):
        self.library = library
        self.count = count
        self.limit = limit
        super().__init__(f'library {library}', f'{count} {what} exceed the table limit of {limit}')


class RelocationOutOfRange(BuildError):
    stage = 'ModuleLinker'

    def __init__(self, section, offset, kind, value, detail=None):
        self.section = section
        self.offset = offset
        self.kind = kind
        self.value = value
        if detail is None:
            detail = f'value 0x{value:x} not representable'
        super().__init__(f'{section}+0x{offset:x}', f'{kind}: {detail}')


class UnsafeStrip(BuildError):
    stage = 'ModuleStripper'

    def __init__(self, library, name, detail):
        self.library = library
        self.name = name
        super().__init__(f'export {library}:{name}', detail)


class FieldTooLong(BuildError):
    stage = 'MetadataEncoder'

    def __init__(self, key, size, limit, detail=None):
        self.key = key
        self.size = size
        self.limit = limit
        if detail is None:
            detail = f'{size} bytes exceed the declared maximum of {limit}'
        super().__init__(f'field {key}', detail)


class MissingRequiredAsset(BuildError):
    stage = 'ContainerPacker'

    def __init__(self, tag):
        self.tag = tag
        super().__init__(f'entry {tag}', 'is required but was not supplied')


class IoFailure(BuildError):

    def __init__(self, path, detail, stage='build', hint=None):
        self.path = path
        self.stage = stage
        if hint is None:
            hint = 'check the path exists and is writable'
        super().__init__(f'{path}', detail, hint)
