import pytest

from stategen.errors import GeneratorDefinitionError, GeneratorStateError
from stategen.state import BodyState, ResumePoint, state_type


def test_resume_point() -> None:
    resume = ResumePoint(2)
    assert (resume.value, resume.terminal) == (0, 3)
    assert not resume.started and not resume.completed
    resume.suspend(1)
    resume.suspend(2)
    assert resume.started and resume.value == 2
    ## sites are 1..n ##
    for site in (0, 3, -1):
        with pytest.raises(GeneratorStateError):
            resume.suspend(site)
    resume.finish()
    assert resume.completed
    resume.finish()
    assert resume.value == 3
    with pytest.raises(GeneratorStateError):
        resume.suspend(1)


def test_resume_point_no_sites() -> None:
    resume = ResumePoint(0)
    assert resume.terminal == 1
    with pytest.raises(GeneratorStateError):
        resume.suspend(1)
    resume.finish()
    assert resume.completed


def test_state_type() -> None:
    state_cls = state_type("count", ("start", "i"))
    assert state_cls.__name__ == "countState"
    assert issubclass(state_cls, BodyState)
    assert state_cls._fields() == ("start", "i")
    state = state_cls()
    assert state._asdict() == {}
    state.start = 1
    state.i = 2
    assert state._asdict() == {"start": 1, "i": 2}
    assert repr(state) == "countState(start=1, i=2)"
    ## only the declared fields ##
    with pytest.raises(AttributeError):
        state.other = 3
    other = state_cls()
    other.start, other.i = 1, 2
    assert state == other
    state._clear()
    assert state._asdict() == {}
    assert state != other


def test_state_type_errors() -> None:
    with pytest.raises(GeneratorDefinitionError):
        state_type("count", ("i", "i"))
    with pytest.raises(GeneratorDefinitionError):
        state_type("count", ("_clear",))
