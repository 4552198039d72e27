"""
Safe expression evaluation for condition blocks.

Expressions are parsed with ``ast`` and checked against a whitelist before
being evaluated with no builtins. Reference tokens are never spliced into
the expression text; each one is bound to a placeholder variable instead,
so string outputs cannot inject code.

Example:
    safe_eval("__ref_0 > 3 and __ref_1 == 'ok'", {"__ref_0": 5, "__ref_1": "ok"})  # True
"""

import ast
import re
from collections.abc import Callable, Iterable
from typing import Any

from blockflow.errors import ExpressionError
from blockflow.graph.references import REFERENCE_PATTERN, is_likely_reference

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "round": round,
}

CONSTANTS: dict[str, Any] = {"true": True, "false": False, "null": None, "none": None}

# JavaScript spellings users commonly type into condition fields
_OPERATOR_ALIASES = [
    (re.compile(r"===?"), "=="),
    (re.compile(r"!==?"), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
]


class _ExpressionValidator(ast.NodeVisitor):
    ALLOWED_NODES = (
        ast.Expression,
        ast.BoolOp,
        ast.BinOp,
        ast.UnaryOp,
        ast.Compare,
        ast.Call,
        ast.Name,
        ast.Load,
        ast.Constant,
        ast.Subscript,
        ast.Slice,
        ast.List,
        ast.Tuple,
        ast.Dict,
        ast.IfExp,
    )

    ALLOWED_BINOPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod)
    ALLOWED_UNARY = (ast.Not, ast.USub, ast.UAdd)
    ALLOWED_CMPS = (
        ast.Eq,
        ast.NotEq,
        ast.Lt,
        ast.Gt,
        ast.LtE,
        ast.GtE,
        ast.In,
        ast.NotIn,
        ast.Is,
        ast.IsNot,
    )

    def __init__(self, allowed_names: Iterable[str]) -> None:
        self.allowed_names = set(allowed_names)

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, ast.cmpop | ast.operator | ast.boolop | ast.unaryop):
            return
        if not isinstance(node, self.ALLOWED_NODES):
            raise ExpressionError(f"Disallowed expression node: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise ExpressionError("Only whitelisted helper functions can be used in conditions")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not allowed in conditions")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in self.allowed_names and node.id not in SAFE_FUNCTIONS:
            raise ExpressionError(f"Unknown variable '{node.id}' in expression")

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if not isinstance(node.op, self.ALLOWED_BINOPS):
            raise ExpressionError(f"Operator '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, self.ALLOWED_UNARY):
            raise ExpressionError(f"Unary op '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_Compare(self, node: ast.Compare) -> None:
        for op in node.ops:
            if not isinstance(op, self.ALLOWED_CMPS):
                raise ExpressionError(f"Comparator '{type(op).__name__}' is not allowed")
        self.generic_visit(node)


def safe_eval(expression: str, names: dict[str, Any] | None = None) -> Any:
    """Evaluate a whitelisted expression with the given variable bindings."""
    names = {**CONSTANTS, **(names or {})}
    for pattern, replacement in _OPERATOR_ALIASES:
        expression = pattern.sub(replacement, expression)
    expression = expression.strip()
    if not expression:
        raise ExpressionError("Condition expression is empty")

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression {expression!r}: {e.msg}") from e

    _ExpressionValidator(names.keys()).visit(tree)
    compiled = compile(tree, "<condition>", "eval")

    scope = dict(SAFE_FUNCTIONS)
    scope.update(names)
    try:
        return eval(compiled, {"__builtins__": {}}, scope)
    except Exception as e:
        raise ExpressionError(f"Failed to evaluate {expression!r}: {e}") from e


def evaluate_condition(expression: str, resolve: Callable[[str], Any]) -> bool:
    """
    Evaluate a condition containing <reference> tokens.

    Args:
        expression: Condition text, e.g. ``<fetch.status> == 200``
        resolve: Callback resolving a reference token (without brackets)

    Returns:
        Truthiness of the evaluated expression
    """
    bindings: dict[str, Any] = {}

    def bind(match: re.Match) -> str:
        token = match.group(1)
        if not is_likely_reference(token):
            return match.group(0)
        placeholder = f"__ref_{len(bindings)}"
        bindings[placeholder] = resolve(token)
        return placeholder

    rendered = REFERENCE_PATTERN.sub(bind, expression)
    return bool(safe_eval(rendered, bindings))
