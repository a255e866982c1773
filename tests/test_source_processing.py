import ast

import pytest

from stategen.errors import GeneratorDefinitionError
from stategen.source_processing import *
from stategen.state import ResumePoint, state_type

#########################
### testing utilities ###
#########################


def body(source: str) -> list[ast.stmt]:
    return ast.parse(source).body


def sample_function(a, b=1, *args, c, d=2, **kwargs):
    """test"""
    yield a


def run(FUNC, persist=(), *args, default=None, calls=5, **kwargs) -> list:
    """runs a compiled body for a number of calls"""
    compiled = compile_generator(FUNC, persist)
    state = state_type(FUNC.__name__, compiled.fields)()
    for name in compiled.fields:
        setattr(state, name, None)
    for name, value in zip(compiled.creation, args):
        setattr(state, name, value)
    resume = ResumePoint(compiled.sites)
    return [compiled.step(state, resume, default, **kwargs) for _ in range(calls)]


#############
### tests ###
#############


def test_walk_scope() -> None:
    (node,) = body("def f():\n    yield 1")
    ## the root itself is walked into ##
    assert any(isinstance(child, ast.Yield) for child in walk_scope(node))
    nodes = list(walk_scope(body("x = lambda: (yield)")[0]))
    assert not any(isinstance(child, ast.Yield) for child in nodes)
    assert any(isinstance(child, ast.Lambda) for child in nodes)


def test_contains_yield() -> None:
    assert contains_yield(body("if x:\n    yield 1")[0])
    assert not contains_yield(body("def f():\n    yield 1")[0])
    assert not contains_yield(body("class A:\n    x = 1")[0])
    assert contains_yield(body("x = yield")[0])


def test_count_yields() -> None:
    source = "yield 1\nwhile x:\n    yield 2\n    def f():\n        yield 3\nelse:\n    yield"
    assert count_yields(body(source)) == 3


def test_get_definition() -> None:
    node = get_definition(sample_function)
    assert isinstance(node, ast.FunctionDef)
    assert node.name == "sample_function"
    ## docstring is dropped and line numbers match the file ##
    assert len(node.body) == 1
    assert node.lineno == sample_function.__code__.co_firstlineno
    with pytest.raises(GeneratorDefinitionError):
        get_definition(lambda: None)


def test_parameter_names() -> None:
    node = get_definition(sample_function)
    assert parameter_names(node) == (("a", "b", "args", "kwargs"), ("c", "d"))


def test_check_names() -> None:
    check_names(sample_function, ("a",), ("c",), ("x", "y"))
    for persist in (("x", "x"), ("a",), ("c",), ("__x",), ("_for_iter_1",)):
        with pytest.raises(GeneratorDefinitionError):
            check_names(sample_function, ("a",), ("c",), persist)


def test_body_checker() -> None:
    checker = BodyChecker(sample_function, ("i",))
    checker.check(body("yield 1\nif x:\n    yield\ndef f():\n    x = yield\n    return 1"))
    for source in (
        "x = yield 1",
        "print((yield))",
        "yield from x",
        "try:\n    yield 1\nexcept:\n    pass",
        "with x:\n    yield 1",
        "match x:\n    case 1:\n        yield 1",
        "return 1",
        "__pc__ = 1",
        "__next_builtin__ = 1",
        "global i",
        "def i():\n    pass",
        "import i",
        "(i := 1)",
        "try:\n    pass\nexcept Exception as i:\n    pass",
    ):
        with pytest.raises(GeneratorDefinitionError):
            checker.check(body(source))


def test_persisted_names() -> None:
    rewriter = PersistedNames(("i",))
    source = "i = 1\nf = lambda i: i\ng = lambda: i\nx = [i for i in y]\nz = [i for j in y]"
    nodes = [rewriter.visit(stmt) for stmt in body(source)]
    assert [ast.unparse(node) for node in nodes] == [
        "__state__.i = 1",
        "f = lambda i: i",
        "g = lambda: __state__.i",
        "x = [i for i in y]",
        "z = [__state__.i for j in y]",
    ]
    ## nonlocal on a persisted name is dropped ##
    (node,) = body("def f():\n    nonlocal i, j\n    i = 1")
    assert ast.unparse(rewriter.visit(node)) == "def f():\n    nonlocal j\n    __state__.i = 1"


def test_declaration_hoister() -> None:
    hoister = DeclarationHoister()
    nodes = [hoister.visit(stmt) for stmt in body("x = 1\nglobal y\ndef f():\n    global z")]
    assert [type(node) for node in nodes] == [ast.Assign, ast.Pass, ast.FunctionDef]
    assert [node.names for node in hoister.declarations] == [["y"]]


def test_compile_generator() -> None:
    def count(n):
        i = 0
        while i < n:
            yield i
            i += 1

    compiled = compile_generator(count, ("i",))
    assert (compiled.sites, compiled.creation, compiled.call) == (1, ("n",), ())
    assert compiled.fields == ("n", "i")
    assert compiled.step.__name__ == "count"
    assert "__resume__.suspend(1)" in compiled.source
    assert run(count, ("i",), 3, default=-1) == [0, 1, 2, -1, -1]


def test_compile_for_loop() -> None:
    def pairs(values):
        for value in values:
            yield value
            yield value * 2

    compiled = compile_generator(pairs, ("value",))
    assert compiled.fields == ("values", "value", "_for_iter_1")
    assert run(pairs, ("value",), [1, 2]) == [1, 2, 2, 4, None]


def test_compile_nested_loops() -> None:
    def grid(rows, cols):
        for r in range(rows):
            for c in range(cols):
                if c == 1:
                    continue
                yield (r, c)
        else:
            yield "end"

    assert run(grid, ("r", "c"), 2, 3, calls=6) == [(0, 0), (0, 2), (1, 0), (1, 2), "end", None]


def test_compile_break() -> None:
    def until(limit):
        i = 0
        while True:
            i += 1
            if i > limit:
                break
            yield i
        yield "after"

    assert run(until, ("i",), 2) == [1, 2, "after", None, None]


def test_compile_per_call() -> None:
    def echo(*, value):
        while True:
            yield value

    compiled = compile_generator(echo)
    resume = ResumePoint(compiled.sites)
    state = state_type("echo", compiled.fields)()
    assert compiled.call == ("value",)
    assert [compiled.step(state, resume, None, value) for value in "abc"] == ["a", "b", "c"]


def test_compile_globals_and_closures() -> None:
    offset = 10

    def shifted(n):
        global SHIFTED
        SHIFTED = True
        yield n + offset

    assert run(shifted, (), 1, calls=2) == [11, None]
    assert SHIFTED
