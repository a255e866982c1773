##################
### exceptions ###
##################


class GeneratorError(Exception):
    """Base class for every error raised by stategen itself"""


class GeneratorDefinitionError(GeneratorError, SyntaxError):
    """
    Raised while a generator is being defined (i.e. by the decorator)
    when its body cannot be turned into a resumable state machine

    Note: these are never raised on calling a generator; a definition
    that compiles is guaranteed to have unique resume points
    """


class GeneratorReentryError(GeneratorError, RuntimeError):
    """Raised when a generator instance is called from inside its own body"""


class GeneratorStateError(GeneratorError, ValueError):
    """Raised on illegal resume point moves or use of a released instance"""
