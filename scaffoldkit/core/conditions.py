"""Inclusion conditions: a small boolean expression language.

Conditions gate FileEntries and dependency declarations. They are parsed once
at load time into an explicit AST (``Eq | Ne | And | Or | Not | Var | Const``)
and evaluated by a pure interpreter over a validated Configuration, so the
same ``(expression, configuration)`` always yields the same answer.

Two equivalent source forms are accepted:

    condition: 'Logger == "zap" and not EnableCLI'
    condition: {and: [{eq: [Logger, zap]}, {not: {var: EnableCLI}}]}

``Name in ["a", "b"]`` is sugar for ``Name == "a" or Name == "b"``.
"""
import ast
import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Set, Tuple, Union

from scaffoldkit.core.errors import ManifestError

Literal = Union[str, bool, int]


@dataclass(frozen=True)
class Const:
    value: bool


@dataclass(frozen=True)
class Var:
    """Truthiness of a ``bool`` variable."""
    name: str


@dataclass(frozen=True)
class Eq:
    name: str
    literal: Literal


@dataclass(frozen=True)
class Ne:
    name: str
    literal: Literal


@dataclass(frozen=True)
class And:
    operands: Tuple["Expression", ...]


@dataclass(frozen=True)
class Or:
    operands: Tuple["Expression", ...]


@dataclass(frozen=True)
class Not:
    operand: "Expression"


Expression = Union[Const, Var, Eq, Ne, And, Or, Not]


class ConditionSyntaxError(ManifestError):
    """Condition source could not be parsed."""

    code = "CONDITION_SYNTAX"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<str>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>==|!=|\(|\)|\[|\]|,)
      | (?P<int>-?\d+)
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "true", "false"}


def _tokenize(source: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match or match.end() == pos:
            raise ConditionSyntaxError(
                f"Unexpected character {source[pos:].strip()[:1]!r} at offset {pos} in condition {source!r}"
            )
        pos = match.end()
        if match.group("str") is not None:
            tokens.append(("literal", ast.literal_eval(match.group("str"))))
        elif match.group("op") is not None:
            tokens.append(("op", match.group("op")))
        elif match.group("int") is not None:
            tokens.append(("literal", int(match.group("int"))))
        else:
            word = match.group("name")
            lowered = word.lower()
            if lowered in ("true", "false"):
                tokens.append(("literal", lowered == "true"))
            elif lowered in _KEYWORDS:
                tokens.append(("keyword", lowered))
            else:
                tokens.append(("name", word))
    return tokens


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def parse(self) -> Expression:
        if not self.tokens:
            raise ConditionSyntaxError("Empty condition")
        expr = self._or()
        if self.pos != len(self.tokens):
            raise self._error(f"unexpected {self.tokens[self.pos][1]!r}")
        return expr

    def _error(self, message: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(f"Invalid condition {self.source!r}: {message}")

    def _peek(self) -> Tuple[str, Any]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return ("eof", None)

    def _accept(self, kind: str, value: Any = None) -> bool:
        tok_kind, tok_value = self._peek()
        if tok_kind == kind and (value is None or tok_value == value):
            self.pos += 1
            return True
        return False

    def _expect(self, kind: str, value: Any = None) -> Any:
        tok_kind, tok_value = self._peek()
        if tok_kind != kind or (value is not None and tok_value != value):
            wanted = value if value is not None else kind
            found = tok_value if tok_kind != "eof" else "end of condition"
            raise self._error(f"expected {wanted!r}, found {found!r}")
        self.pos += 1
        return tok_value

    def _or(self) -> Expression:
        operands = [self._and()]
        while self._accept("keyword", "or"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Expression:
        operands = [self._not()]
        while self._accept("keyword", "and"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Expression:
        if self._accept("keyword", "not"):
            return Not(self._not())
        return self._atom()

    def _atom(self) -> Expression:
        if self._accept("op", "("):
            expr = self._or()
            self._expect("op", ")")
            return expr

        kind, value = self._peek()
        if kind == "literal" and isinstance(value, bool):
            self.pos += 1
            return Const(value)

        name = self._expect("name")
        if self._accept("op", "=="):
            return Eq(name, self._expect("literal"))
        if self._accept("op", "!="):
            return Ne(name, self._expect("literal"))
        if self._accept("keyword", "in"):
            self._expect("op", "[")
            literals = [self._expect("literal")]
            while self._accept("op", ","):
                literals.append(self._expect("literal"))
            self._expect("op", "]")
            return _membership(name, literals)
        return Var(name)


def _membership(name: str, literals: List[Literal]) -> Expression:
    if len(literals) == 1:
        return Eq(name, literals[0])
    return Or(tuple(Eq(name, literal) for literal in literals))


def _from_mapping(data: Any) -> Expression:
    """Build an expression from the structured YAML form."""
    if isinstance(data, bool):
        return Const(data)
    if isinstance(data, str):
        return _Parser(data).parse()
    if not isinstance(data, dict) or len(data) != 1:
        raise ConditionSyntaxError(
            f"Structured condition must be a mapping with exactly one operator, got {data!r}"
        )

    op, args = next(iter(data.items()))
    op = str(op).lower()

    if op in ("eq", "ne"):
        if not isinstance(args, list) or len(args) != 2 or not isinstance(args[0], str):
            raise ConditionSyntaxError(f"'{op}' takes [variable, literal], got {args!r}")
        node = Eq if op == "eq" else Ne
        return node(args[0], args[1])
    if op == "in":
        if (not isinstance(args, list) or len(args) != 2 or not isinstance(args[0], str)
                or not isinstance(args[1], list) or not args[1]):
            raise ConditionSyntaxError(f"'in' takes [variable, [literal, ...]], got {args!r}")
        return _membership(args[0], list(args[1]))
    if op in ("and", "or"):
        if not isinstance(args, list) or not args:
            raise ConditionSyntaxError(f"'{op}' takes a non-empty list of conditions, got {args!r}")
        operands = tuple(_from_mapping(arg) for arg in args)
        if len(operands) == 1:
            return operands[0]
        return And(operands) if op == "and" else Or(operands)
    if op == "not":
        return Not(_from_mapping(args))
    if op == "var":
        if not isinstance(args, str):
            raise ConditionSyntaxError(f"'var' takes a variable name, got {args!r}")
        return Var(args)

    raise ConditionSyntaxError(f"Unknown condition operator '{op}'")


def parse_condition(source: Any) -> Expression:
    """Parse a condition from its string or structured form.

    Raises:
        ConditionSyntaxError: If the source is not a valid condition
    """
    if isinstance(source, str):
        return _Parser(source).parse()
    return _from_mapping(source)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def iter_nodes(expr: Expression) -> Iterator[Expression]:
    """Yield every node of the expression, depth first."""
    yield expr
    if isinstance(expr, (And, Or)):
        for operand in expr.operands:
            yield from iter_nodes(operand)
    elif isinstance(expr, Not):
        yield from iter_nodes(expr.operand)


def referenced_variables(expr: Expression) -> Set[str]:
    """Return every variable name the expression reads."""
    return {node.name for node in iter_nodes(expr) if isinstance(node, (Var, Eq, Ne))}


def check_against_schema(expr: Expression, variables: Mapping[str, Any]) -> List[str]:
    """Cross-check an expression against a blueprint's variable schema.

    Args:
        expr: Parsed condition
        variables: Mapping of variable name -> Variable

    Returns:
        List of problems (empty when the expression is well-typed)
    """
    problems = []
    for node in iter_nodes(expr):
        if isinstance(node, Var):
            variable = variables.get(node.name)
            if variable is None:
                problems.append(f"references undeclared variable '{node.name}'")
            elif variable.kind != "bool":
                problems.append(
                    f"uses '{node.name}' as a boolean but it is declared as {variable.kind}"
                )
        elif isinstance(node, (Eq, Ne)):
            variable = variables.get(node.name)
            if variable is None:
                problems.append(f"references undeclared variable '{node.name}'")
                continue
            problem = _literal_problem(variable, node.literal)
            if problem:
                problems.append(problem)
    return problems


def _literal_problem(variable: Any, literal: Literal) -> str:
    kind = variable.kind
    if kind == "bool":
        if not isinstance(literal, bool):
            return f"compares bool variable '{variable.name}' with {literal!r}"
    elif kind == "int":
        if isinstance(literal, bool) or not isinstance(literal, int):
            return f"compares int variable '{variable.name}' with {literal!r}"
    elif kind == "enum":
        if literal not in variable.allowed_values:
            return (
                f"compares '{variable.name}' with {literal!r}, which is not one of "
                f"{list(variable.allowed_values)}"
            )
    elif kind == "string":
        if not isinstance(literal, str):
            return f"compares string variable '{variable.name}' with {literal!r}"
    else:
        return f"cannot compare {kind} variable '{variable.name}' with a literal"
    return ""


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate(expr: Expression, config: Mapping[str, Any]) -> bool:
    """Evaluate a condition against a validated Configuration.

    The evaluator is pure: no I/O, no state, no randomness.

    Raises:
        ManifestError: If the expression names a variable absent from the
            configuration (unreachable after load-time cross-checking)
    """
    if isinstance(expr, Const):
        return expr.value
    if isinstance(expr, Var):
        return bool(_lookup(expr.name, config))
    if isinstance(expr, Eq):
        return _lookup(expr.name, config) == expr.literal
    if isinstance(expr, Ne):
        return _lookup(expr.name, config) != expr.literal
    if isinstance(expr, And):
        return all(evaluate(operand, config) for operand in expr.operands)
    if isinstance(expr, Or):
        return any(evaluate(operand, config) for operand in expr.operands)
    if isinstance(expr, Not):
        return not evaluate(expr.operand, config)
    raise TypeError(f"Not a condition expression: {expr!r}")


def _lookup(name: str, config: Mapping[str, Any]) -> Any:
    try:
        return config[name]
    except KeyError:
        raise ManifestError(f"Condition references unbound variable '{name}'", variable=name) from None


def describe(expr: Expression) -> str:
    """Render an expression back to its canonical string form."""
    if isinstance(expr, Const):
        return "true" if expr.value else "false"
    if isinstance(expr, Var):
        return expr.name
    if isinstance(expr, (Eq, Ne)):
        op = "==" if isinstance(expr, Eq) else "!="
        return f"{expr.name} {op} {_format_literal(expr.literal)}"
    if isinstance(expr, And):
        return " and ".join(_wrap(operand) for operand in expr.operands)
    if isinstance(expr, Or):
        return " or ".join(_wrap(operand) for operand in expr.operands)
    if isinstance(expr, Not):
        return f"not {_wrap(expr.operand)}"
    raise TypeError(f"Not a condition expression: {expr!r}")


def _wrap(expr: Expression) -> str:
    text = describe(expr)
    return f"({text})" if isinstance(expr, (And, Or)) else text


def _format_literal(literal: Literal) -> str:
    if isinstance(literal, bool):
        return "true" if literal else "false"
    if isinstance(literal, int):
        return str(literal)
    return '"' + literal.replace("\\", "\\\\").replace('"', '\\"') + '"'
