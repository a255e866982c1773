#########################################
### resume points and persisted state ###
#########################################
from typing import Any, Iterable

from stategen.errors import GeneratorDefinitionError, GeneratorStateError


class ResumePoint:
    """
    Records where a generator instance resumes on its next call

    0 means not started, 1..sites are the yield sites (numbered in
    source order when the generator is defined) and sites + 1 is the
    terminal value reached once the body has run off its end

    Note: a resume point never goes back to NOT_STARTED
    """

    NOT_STARTED = 0

    def __init__(self, sites: int) -> None:
        self.sites = sites
        self.value = self.NOT_STARTED

    @property
    def terminal(self) -> int:
        return self.sites + 1

    @property
    def started(self) -> bool:
        return self.value != self.NOT_STARTED

    @property
    def completed(self) -> bool:
        return self.value == self.terminal

    def suspend(self, site: int) -> None:
        """records the yield site the next call resumes after"""
        if self.completed:
            raise GeneratorStateError("cannot suspend a completed generator")
        if not 1 <= site <= self.sites:
            raise GeneratorStateError("yield site %s is not in 1..%s" % (site, self.sites))
        self.value = site

    def finish(self) -> None:
        """moves to the terminal value (idempotent)"""
        self.value = self.terminal

    def __repr__(self) -> str:
        if self.completed:
            return "<ResumePoint completed>"
        if not self.started:
            return "<ResumePoint not started>"
        return "<ResumePoint %s/%s>" % (self.value, self.sites)


class BodyState:
    """
    Base for the per definition record holding every persisted local

    The methods here are underscored (same as namedtuple) so they
    don't clash with persisted local names.

    Subclasses are created with state_type and only ever have the
    fields they were declared with (via __slots__); anything else
    assigned raises an AttributeError
    """

    __slots__ = ()

    @classmethod
    def _fields(cls) -> tuple[str, ...]:
        return cls.__slots__

    def _asdict(self) -> dict[str, Any]:
        """the bound fields and their values"""
        return {name: getattr(self, name) for name in self._fields() if hasattr(self, name)}

    def _clear(self) -> None:
        """unbinds every field e.g. 'drops all references held by the state'"""
        for name in self._fields():
            if hasattr(self, name):
                delattr(self, name)

    def __eq__(self, obj: Any) -> bool:
        if not isinstance(obj, BodyState):
            return NotImplemented
        return type(self) is type(obj) and self._asdict() == obj._asdict()

    __hash__ = None

    def __repr__(self) -> str:
        fields = ", ".join("%s=%r" % item for item in self._asdict().items())
        return "%s(%s)" % (type(self).__name__, fields)


def state_type(name: str, fields: Iterable[str]) -> type:
    """creates the BodyState subclass for a generator definition"""
    fields = tuple(fields)
    if len(set(fields)) != len(fields):
        raise GeneratorDefinitionError("persisted locals must be declared once: %s" % (fields,))
    for field in fields:
        if hasattr(BodyState, field):
            raise GeneratorDefinitionError("%r cannot be used as a persisted local name" % field)
    return type(name + "State", (BodyState,), {"__slots__": fields})
