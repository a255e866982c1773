import gc

import pytest

from stategen.errors import GeneratorStateError
from stategen.finalizer import FinalizerSlot, register_finalizer, run_cleanup
from stategen.state import state_type

#########################
### testing utilities ###
#########################

State = state_type("test", ("resource",))


class Owner:
    def __init__(self) -> None:
        self.gi_finalizer = FinalizerSlot(new_state())


def new_state() -> State:
    state = State()
    state.resource = []
    return state


#############
### tests ###
#############


def test_run_cleanup() -> None:
    state = new_state()
    calls = []
    run_cleanup(lambda: calls.append(1), state)
    assert calls == [1]
    assert state._asdict() == {}
    ## the state is cleared even if the cleanup fails ##
    state = new_state()

    def fail() -> None:
        raise ValueError()

    with pytest.raises(ValueError):
        run_cleanup(fail, state)
    assert state._asdict() == {}
    state = new_state()
    run_cleanup(None, state)
    assert state._asdict() == {}


def test_runs_once_on_collection() -> None:
    calls = []
    owner = Owner()
    slot = owner.gi_finalizer
    register_finalizer(owner, lambda: calls.append(1))
    assert slot.registered
    del owner
    gc.collect()
    assert calls == [1]
    assert not slot.registered
    ## releasing afterwards does nothing ##
    slot.release()
    assert calls == [1]


def test_release() -> None:
    calls = []
    owner = Owner()
    slot = owner.gi_finalizer
    slot.register(owner, lambda: calls.append(1))
    slot.release()
    slot.release()
    assert calls == [1]
    assert slot.released
    assert slot.state._asdict() == {}
    del owner
    gc.collect()
    assert calls == [1]
    with pytest.raises(GeneratorStateError):
        slot.register(Owner(), lambda: None)


def test_release_without_finalizer() -> None:
    owner = Owner()
    slot = owner.gi_finalizer
    assert repr(slot) == "<FinalizerSlot empty>"
    slot.release()
    assert repr(slot) == "<FinalizerSlot released>"
    assert slot.state._asdict() == {}


def test_last_registration_wins() -> None:
    calls = []
    owner = Owner()
    register_finalizer(owner, lambda: calls.append(1))
    register_finalizer(owner, lambda: calls.append(2))
    del owner
    gc.collect()
    assert calls == [2]


def test_register_errors() -> None:
    owner = Owner()
    with pytest.raises(TypeError):
        register_finalizer(owner, None)
    with pytest.raises(TypeError):
        register_finalizer(object(), lambda: None)
