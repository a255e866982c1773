########################
### deferred cleanup ###
########################
import logging
from typing import Any, Callable
from weakref import finalize

from stategen.errors import GeneratorStateError
from stategen.state import BodyState

logger = logging.getLogger(__name__)


def run_cleanup(cleanup: Callable[[], Any] | None, state: BodyState) -> None:
    """runs a cleanup routine then drops everything the state still holds"""
    try:
        if cleanup is not None:
            logger.debug("running finalizer %r", cleanup)
            cleanup()
    finally:
        state._clear()


class FinalizerSlot:
    """
    Holds the cleanup routine of one generator instance

    The routine runs exactly once: either when the instance is released
    explicitly (close/with) or when its last reference goes away (or at
    interpreter exit), whichever comes first. A generator that is never
    called still runs it.

    Note: only the routine and the state are referenced by the weakref
    finalizer; if the routine itself refers to the instance then the
    instance is kept alive until it's closed (or until exit)
    """

    def __init__(self, state: BodyState) -> None:
        self.state = state
        self.released = False
        self.cleanup = None
        self._finalize = None

    @property
    def registered(self) -> bool:
        return self._finalize is not None and self._finalize.alive

    def register(self, owner: object, cleanup: Callable[[], Any]) -> None:
        """
        Attaches the cleanup routine to owner's lifetime

        The last registration wins: a previously registered routine
        is detached and will never run
        """
        if self.released:
            raise GeneratorStateError("cannot register a finalizer on a released generator")
        if not callable(cleanup):
            raise TypeError("finalizer must be callable, not '%s'" % type(cleanup).__name__)
        if self._finalize is not None:
            logger.debug("replacing finalizer %r with %r", self.cleanup, cleanup)
            self._finalize.detach()
        self.cleanup = cleanup
        self._finalize = finalize(owner, run_cleanup, cleanup, self.state)

    def release(self) -> None:
        """runs the cleanup routine now (does nothing if already released)"""
        if self.released:
            return
        self.released = True
        if self._finalize is None:
            self.state._clear()
        else:
            self._finalize()

    def __repr__(self) -> str:
        if self.released:
            return "<FinalizerSlot released>"
        return "<FinalizerSlot %s>" % ("registered" if self.registered else "empty")


def register_finalizer(instance: Any, cleanup: Callable[[], Any]) -> None:
    """
    Registers a zero argument cleanup routine on a generator instance

    At most one routine is attached at a time; registering again
    silently replaces the previous one
    """
    slot = getattr(instance, "gi_finalizer", None)
    if not isinstance(slot, FinalizerSlot):
        raise TypeError("expected a generator instance, not '%s'" % type(instance).__name__)
    slot.register(instance, cleanup)
