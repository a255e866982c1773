###########################
### resumable callables ###
###########################
import logging
from copy import copy
from functools import partial, update_wrapper
from inspect import Parameter, Signature, signature
from sys import version_info
from types import FunctionType
from typing import Any, Callable, Iterable, Mapping

from stategen.errors import GeneratorDefinitionError, GeneratorReentryError
from stategen.finalizer import FinalizerSlot, register_finalizer
from stategen.source_processing import CompiledBody, compile_generator
from stategen.state import BodyState, ResumePoint, state_type
from stategen.utils import return_annotation, zero_value

## minium version supported ##
if version_info < (3, 10):
    raise ImportError("Python version 3.10 or above is required")

logger = logging.getLogger(__name__)


class Exhausted:
    """
    Type of the EXHAUSTED sentinel; pass default=EXHAUSTED to tell
    an exhausted generator apart from one yielding a zero value
    """

    _instance = None

    def __new__(cls) -> "Exhausted":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EXHAUSTED"

    def __reduce__(self) -> str:
        return "EXHAUSTED"


EXHAUSTED = Exhausted()
## default for 'default' i.e. derive it from the return annotation ##
_MISSING = object()


def split_signature(FUNC: FunctionType) -> tuple[Signature, Signature]:
    """
    Splits a definitions signature into its creation and per call
    signatures; keyword only parameters are the per call ones and
    may be passed positionally (in order) on calling an instance
    """
    creation, call = [], []
    for param in signature(FUNC).parameters.values():
        if param.kind is Parameter.KEYWORD_ONLY:
            call.append(param.replace(kind=Parameter.POSITIONAL_OR_KEYWORD))
        else:
            creation.append(param)
    try:
        return Signature(creation), Signature(call)
    except ValueError as e:
        raise GeneratorDefinitionError(
            "per call parameters of %r without a default must come before those with one" % FUNC.__name__
        ) from e


def persisted_locals(persist: Mapping[str, Any] | Iterable[str] | None) -> list[tuple[str, Any]]:
    """persist can be a mapping of name -> initial value or just the names (initially None)"""
    if persist is None:
        return []
    if isinstance(persist, str):
        return [(persist, None)]
    if isinstance(persist, Mapping):
        return list(persist.items())
    return [(name, None) for name in persist]


class Generator:
    """
    A generator instance e.g. what a generator definition returns when
    called with its creation parameters

    Calling the instance resumes the body right after the yield it last
    stopped at (with the given per call parameters) and runs it up to the
    next yield, returning its value. Once the body has run off its end
    every call returns the definitions default value without doing any
    work.

    Note:
     - gi_running: is the body currently being executed
     - gi_suspended: has the body stopped at a yield e.g. state is saved

    Instances are not thread safe: at most one call may be in flight.
    Everything is kept in the _internals dictionary; the gi_ attributes
    are for introspection only.
    """

    def __init__(self, function: "GeneratorFunction", state: BodyState) -> None:
        compiled = function.compiled
        self._internals = {
            "function": function,
            "step": compiled.step,
            "resume": ResumePoint(compiled.sites),
            "state": state,
            "default": function.default,
            "call_signature": function.call_signature,
            "finalizer": FinalizerSlot(state),
            "running": False,
        }
        self.__name__ = function.__name__
        self.__qualname__ = function.__qualname__

    def __call__(self, *args, **kwargs) -> Any:
        """resumes the generator; returns the next yielded value or the default once exhausted"""
        internals = self._internals
        if internals["running"]:
            raise GeneratorReentryError("generator %r is already executing" % self.__name__)
        resume = internals["resume"]
        if resume.completed:
            return internals["default"]
        arguments = internals["call_signature"].bind(*args, **kwargs)
        arguments.apply_defaults()
        internals["running"] = True
        try:
            return internals["step"](internals["state"], resume, internals["default"], **arguments.arguments)
        except Exception:
            ## like native generators an exception ends the generator ##
            logger.debug("generator %r terminated by an exception", self.__name__, exc_info=True)
            resume.finish()
            raise
        finally:
            internals["running"] = False

    def __iter__(self) -> "Generator":
        return self

    def __next__(self) -> Any:
        """
        Iterator protocol for generators without required per call
        parameters; exhaustion is taken from the resume point so a
        yielded default value doesn't end the iteration
        """
        if self.exhausted:
            raise StopIteration
        value = self()
        if self.exhausted:
            raise StopIteration
        return value

    def close(self) -> None:
        """
        Releases the generator now: it becomes exhausted and its
        finalizer (if any) runs. Closing again does nothing
        """
        if self._internals["running"]:
            raise GeneratorReentryError("cannot close generator %r while it's executing" % self.__name__)
        self._internals["resume"].finish()
        self._internals["finalizer"].release()

    def __enter__(self) -> "Generator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def exhausted(self) -> bool:
        return self._internals["resume"].completed

    @property
    def closed(self) -> bool:
        return self._internals["finalizer"].released

    @property
    def gi_running(self) -> bool:
        return self._internals["running"]

    @property
    def gi_suspended(self) -> bool:
        resume = self._internals["resume"]
        return resume.started and not resume.completed and not self._internals["running"]

    @property
    def gi_resume(self) -> int:
        return self._internals["resume"].value

    @property
    def gi_state(self) -> BodyState:
        return self._internals["state"]

    @property
    def gi_finalizer(self) -> FinalizerSlot:
        return self._internals["finalizer"]

    @property
    def gi_function(self) -> "GeneratorFunction":
        return self._internals["function"]

    def __repr__(self) -> str:
        return "<generator %r at %r>" % (self.__qualname__, self._internals["resume"])


class GeneratorFunction:
    """
    A generator definition: calling it with the creation parameters
    creates a new Generator instance

    The body is compiled once on definition (see
    source_processing.compile_generator) so every misuse that can be
    detected is raised here as a GeneratorDefinitionError

    Note: methods are rejected; a definition is not a descriptor so it
    would neither bind self nor keep the class private name mangling
    """

    def __init__(
        self,
        FUNC: FunctionType,
        default: Any = _MISSING,
        persist: Mapping[str, Any] | Iterable[str] | None = None,
        cleanup: Callable[[BodyState], Any] | None = None,
        declaration: "GeneratorDeclaration" = None,
    ) -> None:
        if not isinstance(FUNC, FunctionType):
            raise TypeError("type '%s' is an invalid initializer for a generator definition" % type(FUNC).__name__)
        ## 'Class.method' (nested functions are 'outer.<locals>.inner') ##
        qualname = FUNC.__qualname__.split(".")
        if len(qualname) > 1 and qualname[-2] != "<locals>":
            raise GeneratorDefinitionError(
                "methods cannot be generators (%r); define the generator outside the class" % FUNC.__qualname__
            )
        if cleanup is not None and not callable(cleanup):
            raise TypeError("cleanup must be callable, not '%s'" % type(cleanup).__name__)
        persist = persisted_locals(persist)
        self.compiled: CompiledBody = compile_generator(FUNC, [name for name, _ in persist])
        self.persist = dict(persist)
        self.state_type = state_type(FUNC.__name__, self.compiled.fields)
        self.creation_signature, self.call_signature = split_signature(FUNC)
        if default is _MISSING:
            annotation = return_annotation(FUNC)
            if annotation is None and declaration is not None:
                annotation = declaration.returns
            default = zero_value(annotation)
        self.default = default
        self.cleanup = cleanup
        self.declaration = declaration
        update_wrapper(self, FUNC)
        self.__source__ = self.compiled.source

    @property
    def yield_sites(self) -> int:
        return self.compiled.sites

    @property
    def persisted(self) -> tuple[str, ...]:
        return self.compiled.fields

    def __call__(self, *args, **kwargs) -> Generator:
        """creates a new generator instance with its own state and resume point"""
        arguments = self.creation_signature.bind(*args, **kwargs)
        arguments.apply_defaults()
        ## loop iterators start out empty ##
        values = dict.fromkeys(self.compiled.fields)
        values.update(arguments.arguments)
        for name, value in self.persist.items():
            ## copied so that mutable initial values aren't shared across instances ##
            values[name] = copy(value)
        state = self.state_type()
        for name, value in values.items():
            setattr(state, name, value)
        gen = Generator(self, state)
        if self.cleanup is not None:
            register_finalizer(gen, partial(self.cleanup, state))
        return gen

    def __repr__(self) -> str:
        return "<generator function %r>" % self.__qualname__


def generator(
    FUNC: FunctionType = None,
    *,
    default: Any = _MISSING,
    persist: Mapping[str, Any] | Iterable[str] | None = None,
    cleanup: Callable[[BodyState], Any] | None = None,
) -> GeneratorFunction | Callable[[FunctionType], GeneratorFunction]:
    """
    Defines a generator; usable bare (@generator) or with arguments:

    @generator(default=0, persist={"total": 0}, cleanup=release)
    def running_total(start, *, amount=1):
        total = start
        while True:
            total += amount
            yield total

    - positional parameters are the creation parameters (persisted)
    - keyword only parameters are the per call parameters (transient)
    - persist: the other persisted locals and their initial values
    - default: returned once exhausted (defaults to the zero value of
      the return annotation, else None)
    - cleanup: called with the state when the instance is released
    """
    if FUNC is not None:
        return GeneratorFunction(FUNC, default, persist, cleanup)

    def decorator(FUNC: FunctionType) -> GeneratorFunction:
        return GeneratorFunction(FUNC, default, persist, cleanup)

    return decorator


class GeneratorDeclaration:
    """
    The shape of a generator without its body (declaration form) e.g.

    @declare
    def counter(start: int, *, step: int = 1) -> int: ...

    @counter.define(persist=("i",))
    def counter(start, *, step=1):
        ...
    """

    def __init__(self, FUNC: FunctionType) -> None:
        self.creation_signature, self.call_signature = split_signature(FUNC)
        self.returns = return_annotation(FUNC)
        self.__name__ = FUNC.__name__
        self.__qualname__ = FUNC.__qualname__
        self.__doc__ = FUNC.__doc__

    def check(self, FUNC: FunctionType) -> None:
        """makes sure a definition has the declared shape"""
        creation, call = split_signature(FUNC)
        for kind, declared, defined in (
            ("creation", self.creation_signature, creation),
            ("per call", self.call_signature, call),
        ):
            if tuple(declared.parameters) != tuple(defined.parameters):
                raise GeneratorDefinitionError(
                    "%s parameters of %r %s do not match its declaration %s"
                    % (kind, FUNC.__name__, tuple(defined.parameters), tuple(declared.parameters))
                )
        returns = return_annotation(FUNC)
        if returns is not None and self.returns is not None and returns != self.returns:
            raise GeneratorDefinitionError(
                "%r returns %r but is declared to return %r" % (FUNC.__name__, returns, self.returns)
            )

    def define(
        self,
        FUNC: FunctionType = None,
        *,
        default: Any = _MISSING,
        persist: Mapping[str, Any] | Iterable[str] | None = None,
        cleanup: Callable[[BodyState], Any] | None = None,
    ) -> GeneratorFunction | Callable[[FunctionType], GeneratorFunction]:
        """same as generator but checked against (and linked to) this declaration"""

        def decorator(FUNC: FunctionType) -> GeneratorFunction:
            self.check(FUNC)
            return GeneratorFunction(FUNC, default, persist, cleanup, self)

        if FUNC is not None:
            return decorator(FUNC)
        return decorator

    def __call__(self, *args, **kwargs) -> Generator:
        raise TypeError("generator %r is only declared; give it a body with .define" % self.__name__)

    def __repr__(self) -> str:
        return "<generator declaration %r%s>" % (self.__qualname__, self.creation_signature)


def declare(FUNC: FunctionType) -> GeneratorDeclaration:
    """declares a generators return type, creation and per call parameters (without a body)"""
    return GeneratorDeclaration(FUNC)
