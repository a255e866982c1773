#####################################################
### turning generator source into resume dispatch ###
#####################################################
"""
A generator body is compiled into a 'step' function that takes the
persisted state, the resume point, the exhausted value and the per
call parameters. Every call to the step function picks up at the
current resume point:

    def step(__state__, __resume__, __default__, <per call parameters>):
        __pc__ = __resume__.value
        while True:
            if __pc__ == 0:          # not started
                ...
                __resume__.suspend(1)
                return <value>     # yield site 1
            if __pc__ == 1:          # right after yield site 1
                ...
                __pc__ = 4           # jump to an internal label
                continue
            ...
            return __default__       # terminal

Structured control flow that contains a yield (if, while, for) gets
split into labelled blocks with jumps between them; everything else
is kept as written. Persisted names are rewritten into attributes of
the state record and all other names stay ordinary locals of the step
function i.e. they only live for one call.
"""
import ast
import logging
from inspect import getsource
from textwrap import dedent
from types import CellType, CodeType, FunctionType
from typing import Iterable

from stategen.errors import GeneratorDefinitionError
from stategen.utils import closure_cells, getcode

logger = logging.getLogger(__name__)

## names used by the generated code (user code may not use them) ##
RESERVED = (
    "__state__",
    "__resume__",
    "__default__",
    "__pc__",
    "__stop__",
    "__item__",
    "__iter_builtin__",
    "__next_builtin__",
)
## persisted slot holding the iterator of the n-th for loop that yields ##
LOOP_SLOT = "_for_iter_%s"

NESTED_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)
YIELDS = (ast.Yield, ast.YieldFrom)


class LoopExhausted:
    """marks the end of a for loops iterator (see Lowering.lower_For)"""

    def __repr__(self) -> str:
        return "<loop exhausted>"


STOP = LoopExhausted()
## values the step function gets through closure cells so the body can't shadow them ##
CELL_CONSTANTS = {"__stop__": STOP, "__iter_builtin__": iter, "__next_builtin__": next}


###############
### helpers ###
###############


def walk_scope(node: ast.AST) -> Iterable[ast.AST]:
    """ast.walk that yields nested functions, lambdas and classes without going into them"""
    stack = [node]
    while stack:
        node = stack.pop()
        yield node
        if not isinstance(node, NESTED_SCOPES):
            stack += ast.iter_child_nodes(node)


def contains_yield(node: ast.AST) -> bool:
    return any(isinstance(child, YIELDS) for child in walk_scope(node))


def is_yield_statement(node: ast.AST) -> bool:
    return isinstance(node, ast.Expr) and isinstance(node.value, ast.Yield)


def count_yields(body: list[ast.stmt]) -> int:
    """counts the yield sites of a body (only statement yields are allowed)"""
    return sum(is_yield_statement(node) for stmt in body for node in walk_scope(stmt))


def name(id: str, store: bool = False) -> ast.Name:
    return ast.Name(id=id, ctx=ast.Store() if store else ast.Load())


def attribute(obj: str, attr: str, store: bool = False) -> ast.Attribute:
    return ast.Attribute(value=name(obj), attr=attr, ctx=ast.Store() if store else ast.Load())


def method_call(obj: str, method: str, *args: ast.expr) -> ast.Expr:
    return ast.Expr(value=ast.Call(func=attribute(obj, method), args=list(args), keywords=[]))


def locate(nodes: list[ast.stmt], origin: ast.AST) -> list[ast.stmt]:
    """gives generated statements the location of the statement they came from"""
    for node in nodes:
        ast.copy_location(node, origin)
    return nodes


def scope_bindings(node: ast.AST) -> set[str]:
    """the names local to a nested function, lambda or class body"""
    bound, declared = set(), set()
    if not isinstance(node, ast.ClassDef):
        args = node.args
        for arg in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if arg is not None:
                bound.add(arg.arg)
    body = node.body if isinstance(node.body, list) else [node.body]
    for stmt in body:
        for child in walk_scope(stmt):
            if isinstance(child, ast.Name) and not isinstance(child.ctx, ast.Load):
                bound.add(child.id)
            elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                bound.add(child.name)
            elif isinstance(child, ast.alias):
                bound.add(child.asname or child.name.split(".")[0])
            elif isinstance(child, (ast.Global, ast.Nonlocal)):
                declared.update(child.names)
    return bound - declared


def get_definition(FUNC: FunctionType) -> ast.FunctionDef:
    """
    Gets the function definition of FUNC as an ast node with its
    decorators removed and its line numbers matching the source file
    """
    if FUNC.__name__ == "<lambda>":
        raise GeneratorDefinitionError("lambdas cannot be generators (they can't hold yield statements)")
    try:
        source = dedent(getsource(FUNC))
    except (OSError, TypeError) as e:
        raise GeneratorDefinitionError("could not retrieve the source of %r" % FUNC) from e
    node = ast.parse(source).body[0]
    if not isinstance(node, ast.FunctionDef):
        raise GeneratorDefinitionError("%r must be defined with a plain 'def'" % FUNC.__name__)
    ast.increment_lineno(node, getcode(FUNC).co_firstlineno - 1)
    node.decorator_list = []
    ## drop the docstring ##
    if node.body and isinstance(node.body[0], ast.Expr) and isinstance(node.body[0].value, ast.Constant):
        if isinstance(node.body[0].value.value, str):
            node.body = node.body[1:]
    return node


##################
### validation ###
##################


class BodyChecker(ast.NodeVisitor):
    """
    Rejects anything in a generator body that cannot be resumed

    yields are only allowed as statements, outside of try/with/match
    blocks; nothing can be sent in (yield expressions) or delegated
    (yield from), and the body can't return a value
    """

    def __init__(self, FUNC: FunctionType, persisted: Iterable[str]) -> None:
        self.FUNC = FUNC
        self.persisted = set(persisted)

    def error(self, node: ast.AST, message: str) -> GeneratorDefinitionError:
        return GeneratorDefinitionError(
            "%s (generator %r, line %s)" % (message, self.FUNC.__name__, getattr(node, "lineno", "?"))
        )

    def check(self, body: list[ast.stmt]) -> None:
        for stmt in body:
            self.visit(stmt)

    ## nested scopes have their own yields/returns ##
    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self.bound_by(node, node.name, "a function definition")

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self.bound_by(node, node.name, "a function definition")

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self.bound_by(node, node.name, "a class definition")

    def visit_Lambda(self, node: ast.Lambda) -> None:
        pass

    def visit_Expr(self, node: ast.Expr) -> None:
        if isinstance(node.value, ast.Yield):
            if node.value.value is not None:
                self.visit(node.value.value)
            return
        self.generic_visit(node)

    def visit_Yield(self, node: ast.Yield) -> None:
        raise self.error(node, "yield can only be used as a statement; values cannot be sent into a generator")

    def visit_YieldFrom(self, node: ast.YieldFrom) -> None:
        raise self.error(node, "'yield from' is not supported")

    def no_yield(self, node: ast.AST) -> None:
        if contains_yield(node):
            raise self.error(node, "yield inside '%s' cannot be resumed" % type(node).__name__.lower())
        self.generic_visit(node)

    visit_Try = visit_TryStar = visit_With = visit_AsyncWith = visit_AsyncFor = visit_Match = no_yield

    def visit_Return(self, node: ast.Return) -> None:
        if node.value is not None:
            raise self.error(node, "generators cannot return a value")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in RESERVED:
            raise self.error(node, "%r is reserved" % node.id)

    def visit_Global(self, node: ast.Global | ast.Nonlocal) -> None:
        for id in node.names:
            if id in self.persisted:
                raise self.error(node, "persisted local %r cannot be declared %s" % (id, type(node).__name__.lower()))

    visit_Nonlocal = visit_Global

    def bound_by(self, node: ast.AST, id: str | None, what: str) -> None:
        """persisted locals are attributes of the state and can only be bound by assignment"""
        if id in self.persisted:
            raise self.error(node, "persisted local %r cannot be bound by %s" % (id, what))

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.bound_by(node, node.target.id, "an assignment expression")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        self.bound_by(node, node.name, "an except clause")
        self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> None:
        self.bound_by(node, node.asname or node.name.split(".")[0], "an import")

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        self.bound_by(node, node.name, "a match pattern")
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        self.bound_by(node, node.name, "a match pattern")

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self.bound_by(node, node.rest, "a match pattern")
        self.generic_visit(node)


#################
### rewriting ###
#################


class DeclarationHoister(ast.NodeTransformer):
    """
    Removes the global/nonlocal statements of the body so they
    can be put at the top of the step function (the blocks get
    reordered so they could otherwise end up after a use)
    """

    def __init__(self) -> None:
        self.declarations = []

    def visit_Global(self, node: ast.Global | ast.Nonlocal) -> ast.Pass:
        self.declarations.append(node)
        return ast.copy_location(ast.Pass(), node)

    visit_Nonlocal = visit_Global

    def skip(self, node: ast.AST) -> ast.AST:
        return node

    visit_FunctionDef = visit_AsyncFunctionDef = visit_ClassDef = visit_Lambda = skip


class PersistedNames(ast.NodeTransformer):
    """Rewrites the persisted names into attributes of the state record"""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = set(names)

    def visit_Name(self, node: ast.Name) -> ast.Name | ast.Attribute:
        if node.id in self.names:
            return ast.copy_location(ast.Attribute(value=name("__state__"), attr=node.id, ctx=node.ctx), node)
        return node

    def visit_Nonlocal(self, node: ast.Nonlocal) -> ast.Nonlocal | ast.Pass:
        """a nested function using nonlocal on a persisted name now refers to the state instead"""
        node.names = [id for id in node.names if id not in self.names]
        if node.names:
            return node
        return ast.copy_location(ast.Pass(), node)

    def nested(self, node: ast.AST, bound: set[str]) -> ast.AST:
        names = self.names
        self.names = names - bound
        try:
            return self.generic_visit(node)
        finally:
            self.names = names

    def visit_scope(self, node: ast.AST) -> ast.AST:
        return self.nested(node, scope_bindings(node))

    visit_FunctionDef = visit_AsyncFunctionDef = visit_ClassDef = visit_Lambda = visit_scope

    def visit_comprehension_scope(self, node: ast.AST) -> ast.AST:
        bound = set()
        for generator in node.generators:
            for child in ast.walk(generator.target):
                if isinstance(child, ast.Name):
                    bound.add(child.id)
        return self.nested(node, bound)

    visit_ListComp = visit_SetComp = visit_DictComp = visit_GeneratorExp = visit_comprehension_scope


class JumpRewriter(ast.NodeTransformer):
    """
    Rewrites the statements kept as written so that:

    - break/continue that belong to a split up loop become jumps
    - return finishes the generator
    """

    def __init__(self, lowering: "Lowering") -> None:
        self.lowering = lowering
        ## how many loops (kept as written) we're inside ##
        self.depth = 0

    def visit_block(self, stmts: list[ast.stmt]) -> list[ast.stmt]:
        block = []
        for stmt in stmts:
            result = self.visit(stmt)
            if isinstance(result, list):
                block += result
            else:
                block.append(result)
        return block

    def visit_loop(self, node: ast.For | ast.While) -> ast.AST:
        self.depth += 1
        try:
            node.body = self.visit_block(node.body)
        finally:
            self.depth -= 1
        ## the else clause runs outside of the loop ##
        node.orelse = self.visit_block(node.orelse)
        return node

    visit_For = visit_While = visit_AsyncFor = visit_loop

    def visit_Break(self, node: ast.Break) -> ast.AST | list[ast.stmt]:
        if self.depth:
            return node
        return locate(self.lowering.jump(self.lowering.loops[-1][1]), node)

    def visit_Continue(self, node: ast.Continue) -> ast.AST | list[ast.stmt]:
        if self.depth:
            return node
        return locate(self.lowering.jump(self.lowering.loops[-1][0]), node)

    def visit_Return(self, node: ast.Return) -> list[ast.stmt]:
        return locate(self.lowering.finish(), node)

    def skip(self, node: ast.AST) -> ast.AST:
        return node

    visit_FunctionDef = visit_AsyncFunctionDef = visit_ClassDef = visit_Lambda = skip


################
### lowering ###
################


class Lowering:
    """
    Splits a (rewritten) generator body into labelled blocks

    Labels:
        0            -> not started
        1..sites     -> the code right after each yield site
        sites + 1    -> terminal (has no block; dispatch returns __default__)
        sites + 2... -> internal join points of split up if/while/for

    Every block ends in a jump, a yield or the finish of the generator.
    """

    def __init__(self, sites: int) -> None:
        self.sites, self.site = sites, 0
        self.label = sites + 1
        self.blocks = {}
        ## (continue label, break label) of the split up loops ##
        self.loops = []
        self.loop_slots = []
        self.current = self.open(0)

    def open(self, label: int) -> list[ast.stmt]:
        self.current = self.blocks[label] = []
        return self.current

    def new_label(self) -> int:
        self.label += 1
        return self.label

    def emit(self, nodes: list[ast.stmt], origin: ast.AST) -> None:
        self.current += locate(nodes, origin)

    def jump(self, label: int) -> list[ast.stmt]:
        return [ast.Assign(targets=[name("__pc__", True)], value=ast.Constant(label)), ast.Continue()]

    def finish(self) -> list[ast.stmt]:
        return [method_call("__resume__", "finish"), ast.Return(value=name("__default__"))]

    def lower(self, stmts: list[ast.stmt]) -> None:
        for stmt in stmts:
            if contains_yield(stmt):
                getattr(self, "lower_" + type(stmt).__name__)(stmt)
            else:
                result = JumpRewriter(self).visit(stmt)
                self.emit(result if isinstance(result, list) else [result], stmt)

    def lower_Expr(self, node: ast.Expr) -> None:
        """a yield statement"""
        self.site += 1
        value = node.value.value or ast.Constant(None)
        self.emit([method_call("__resume__", "suspend", ast.Constant(self.site)), ast.Return(value=value)], node)
        self.open(self.site)

    def lower_If(self, node: ast.If) -> None:
        body, end = self.new_label(), self.new_label()
        orelse = self.new_label() if node.orelse else end
        self.emit([ast.If(test=node.test, body=self.jump(body), orelse=self.jump(orelse))], node)
        self.open(body)
        self.lower(node.body)
        self.emit(self.jump(end), node)
        if node.orelse:
            self.open(orelse)
            self.lower(node.orelse)
            self.emit(self.jump(end), node)
        self.open(end)

    def lower_While(self, node: ast.While) -> None:
        top, body, end = self.new_label(), self.new_label(), self.new_label()
        orelse = self.new_label() if node.orelse else end
        self.emit(self.jump(top), node)
        self.open(top)
        self.emit([ast.If(test=node.test, body=self.jump(body), orelse=self.jump(orelse))], node)
        self.loop_body(node, top, end, body)
        self.loop_else(node, orelse, end)

    def lower_For(self, node: ast.For) -> None:
        """
        The iterator is kept in a persisted slot so the loop carries on
        from where it was on the next call; the slot is emptied when the
        loop is left (exhausted or via break)
        """
        self.loop_slots.append(LOOP_SLOT % (len(self.loop_slots) + 1))
        slot = self.loop_slots[-1]
        top, body, exit, end = self.new_label(), self.new_label(), self.new_label(), self.new_label()
        orelse = self.new_label() if node.orelse else end
        release = ast.Assign(targets=[attribute("__state__", slot, True)], value=ast.Constant(None))
        self.emit(
            [
                ast.Assign(
                    targets=[attribute("__state__", slot, True)],
                    value=ast.Call(func=name("__iter_builtin__"), args=[node.iter], keywords=[]),
                )
            ]
            + self.jump(top),
            node,
        )
        self.open(top)
        self.emit(
            [
                ast.Assign(
                    targets=[name("__item__", True)],
                    value=ast.Call(func=name("__next_builtin__"), args=[attribute("__state__", slot), name("__stop__")], keywords=[]),
                ),
                ast.If(
                    test=ast.Compare(left=name("__item__"), ops=[ast.Is()], comparators=[name("__stop__")]),
                    body=[release] + self.jump(orelse),
                    orelse=[],
                ),
                ast.Assign(targets=[node.target], value=name("__item__")),
            ]
            + self.jump(body),
            node,
        )
        self.loop_body(node, top, exit, body)
        self.open(exit)
        self.emit([ast.Assign(targets=[attribute("__state__", slot, True)], value=ast.Constant(None))] + self.jump(end), node)
        self.loop_else(node, orelse, end)

    def loop_body(self, node: ast.For | ast.While, top: int, exit: int, body: int) -> None:
        self.loops.append((top, exit))
        self.open(body)
        self.lower(node.body)
        self.emit(self.jump(top), node)
        self.loops.pop()

    def loop_else(self, node: ast.For | ast.While, orelse: int, end: int) -> None:
        if node.orelse:
            self.open(orelse)
            self.lower(node.orelse)
            self.emit(self.jump(end), node)
        self.open(end)

    def dispatch(self, origin: ast.AST) -> list[ast.stmt]:
        """
        The dispatch over the resume point; since every block ends in a
        transfer the blocks can simply follow each other
        """
        missing = [site for site in range(1, self.sites + 1) if site not in self.blocks]
        if self.site != self.sites or missing:
            raise GeneratorDefinitionError("yield sites do not have unique resume points: %s" % missing)
        chain = []
        for label, block in sorted(self.blocks.items()):
            test = ast.Compare(left=name("__pc__"), ops=[ast.Eq()], comparators=[ast.Constant(label)])
            chain += locate([ast.If(test=test, body=block or [ast.Pass()], orelse=[])], block[0] if block else origin)
        chain += locate([ast.Return(value=name("__default__"))], origin)
        return locate(
            [
                ast.Assign(targets=[name("__pc__", True)], value=attribute("__resume__", "value")),
                ast.While(test=ast.Constant(True), body=chain, orelse=[]),
            ],
            origin,
        )


#################
### compiling ###
#################


class CompiledBody:
    """The result of compiling a generator definition"""

    def __init__(
        self,
        step: FunctionType,
        sites: int,
        creation: tuple[str, ...],
        call: tuple[str, ...],
        fields: tuple[str, ...],
        source: str,
    ) -> None:
        self.step = step
        self.sites = sites
        self.creation = creation
        self.call = call
        self.fields = fields
        self.source = source

    def __repr__(self) -> str:
        return "<CompiledBody %s (%s yield sites)>" % (self.step.__name__, self.sites)


def parameter_names(node: ast.FunctionDef) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """the creation and per call parameter names of a definition (keyword only ones are per call)"""
    args = node.args
    creation = [arg.arg for arg in args.posonlyargs + args.args]
    creation += [arg.arg for arg in (args.vararg, args.kwarg) if arg is not None]
    return tuple(creation), tuple(arg.arg for arg in args.kwonlyargs)


def check_names(FUNC: FunctionType, creation: tuple[str, ...], call: tuple[str, ...], persist: tuple[str, ...]) -> None:
    """construction time checks on the declared names"""
    seen = set()
    for id in persist:
        if id in seen:
            raise GeneratorDefinitionError("persisted local %r is declared more than once" % id)
        seen.add(id)
        if id in creation or id in call:
            raise GeneratorDefinitionError("persisted local %r is already declared as a parameter" % id)
    for id in creation + call + persist:
        if id.startswith("__") or id.startswith(LOOP_SLOT % ""):
            raise GeneratorDefinitionError("%r is reserved (generator %r)" % (id, FUNC.__name__))


def function_def(id: str, args: Iterable[str], body: list[ast.stmt], origin: ast.AST) -> ast.FunctionDef:
    arguments = ast.arguments(
        posonlyargs=[],
        args=[ast.arg(arg=arg) for arg in args],
        vararg=None,
        kwonlyargs=[],
        kw_defaults=[],
        kwarg=None,
        defaults=[],
    )
    node = ast.FunctionDef(name=id, args=arguments, body=body, decorator_list=[], returns=None)
    ## since 3.12 ##
    if "type_params" in ast.FunctionDef._fields:
        node.type_params = []
    return ast.copy_location(node, origin)


def build_step(node: ast.FunctionDef, call: tuple[str, ...], declarations: list[ast.stmt], body: list[ast.stmt]) -> ast.FunctionDef:
    """the step function definition"""
    return function_def("__step__", ("__state__", "__resume__", "__default__") + call, declarations + body, node)


def build_factory(node: ast.FunctionDef, freevars: Iterable[str], step: ast.FunctionDef) -> ast.Module:
    """
    Wraps the step function in a function declaring all its free
    variables so that the step function can be given the closure
    cells of the original definition (the factory never runs)
    """
    ids = tuple(CELL_CONSTANTS) + tuple(freevars)
    cells = [ast.Assign(targets=[name(id, True)], value=ast.Constant(None)) for id in ids]
    body = locate(cells, node) + [step] + locate([ast.Return(value=name("__step__"))], node)
    module = ast.Module(body=[function_def("__factory__", (), body, node)], type_ignores=[])
    return ast.fix_missing_locations(module)


def find_code(code_obj: CodeType, name: str) -> CodeType:
    for const in code_obj.co_consts:
        if isinstance(const, CodeType) and const.co_name == name:
            return const
    raise LookupError("code object %r not found" % name)


def compile_generator(FUNC: FunctionType, persist: Iterable[str] = ()) -> CompiledBody:
    """
    Compiles a generator definition into its step function

    FUNC: a plain function whose body uses yield statements; its
          positional parameters are the creation parameters and its
          keyword only parameters are the per call parameters
    persist: names of the persisted locals besides the creation parameters
    """
    persist = tuple(persist)
    node = get_definition(FUNC)
    creation, call = parameter_names(node)
    check_names(FUNC, creation, call, persist)
    BodyChecker(FUNC, creation + persist).check(node.body)
    ## rewrite ##
    hoister = DeclarationHoister()
    body = [hoister.visit(stmt) for stmt in node.body]
    rewriter = PersistedNames(creation + persist)
    body = [rewriter.visit(stmt) for stmt in body]
    declarations = [rewriter.visit(stmt) for stmt in hoister.declarations]
    ## lower ##
    sites = count_yields(body)
    lowering = Lowering(sites)
    lowering.lower(body)
    lowering.emit(lowering.finish(), node)
    step = build_step(node, call, declarations, lowering.dispatch(node))
    ## compile, then give the step function the real closure cells ##
    cells = closure_cells(FUNC)
    module = build_factory(node, cells, step)
    code_obj = compile(module, getcode(FUNC).co_filename, "exec")
    step_code = find_code(find_code(code_obj, "__factory__"), "__step__")
    for id, value in CELL_CONSTANTS.items():
        cells[id] = CellType(value)
    names = {"co_name": FUNC.__name__}
    if hasattr(step_code, "co_qualname"):
        names["co_qualname"] = FUNC.__qualname__
    step_function = FunctionType(
        step_code.replace(**names),
        FUNC.__globals__,
        FUNC.__name__,
        None,
        tuple(cells[id] for id in step_code.co_freevars),
    )
    compiled = CompiledBody(
        step_function,
        sites,
        creation,
        call,
        creation + persist + tuple(lowering.loop_slots),
        ast.unparse(module),
    )
    logger.debug(
        "compiled generator %r: %s yield sites, %s blocks, persisted %s",
        FUNC.__qualname__,
        sites,
        len(lowering.blocks),
        compiled.fields,
    )
    return compiled

