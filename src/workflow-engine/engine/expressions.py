"""
Sandboxed expression evaluation.

Expressions are parsed with ``ast`` in eval mode and walked by a whitelisting
visitor. Only literals, name lookups, dict/sequence indexing, comparisons,
boolean logic, basic arithmetic and a fixed set of pure functions are
allowed; anything else raises ExpressionError before it is evaluated.

Attribute syntax is sugar for mapping lookup: ``output.approved`` reads the
``approved`` key of the ``output`` dict. Real Python attributes are never
touched.
"""

import ast
import operator
from functools import lru_cache
from typing import Any, Dict, Mapping

from .errors import ExpressionError

MAX_EXPRESSION_LENGTH = 2000
MAX_SEQUENCE_LENGTH = 100000

SEQUENCE_TYPES = (str, list, tuple)


def _check_length(length: int) -> None:
    if length > MAX_SEQUENCE_LENGTH:
        raise ExpressionError(f"Result longer than {MAX_SEQUENCE_LENGTH} items")


def _safe_mult(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, SEQUENCE_TYPES) and isinstance(count, int):
            _check_length(len(seq) * max(count, 0))
    return operator.mul(left, right)


def _safe_add(left: Any, right: Any) -> Any:
    if isinstance(left, SEQUENCE_TYPES) and isinstance(right, SEQUENCE_TYPES):
        _check_length(len(left) + len(right))
    return operator.add(left, right)


def _safe_mod(left: Any, right: Any) -> Any:
    if isinstance(left, str):
        raise ExpressionError("String formatting is not allowed")
    return operator.mod(left, right)


SAFE_OPERATORS = {
    ast.Add: _safe_add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mult,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: _safe_mod,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Not: operator.not_,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}


class SafeEvaluator(ast.NodeVisitor):
    """
    AST-based evaluator restricted to a small expression grammar.

    Names resolve against the provided variables only; there is no access
    to builtins, modules or object attributes.
    """

    def __init__(self, variables: Mapping[str, Any]):
        self.variables = variables

    def generic_visit(self, node):
        raise ExpressionError(f"Construct not allowed: {type(node).__name__}")

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        if node.id in self.variables:
            return self.variables[node.id]
        if node.id in ("true", "false", "null"):
            return {"true": True, "false": False, "null": None}[node.id]
        raise ExpressionError(f"Undefined variable: {node.id}")

    def visit_Attribute(self, node):
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed")
        value = self.visit(node.value)
        if not isinstance(value, Mapping):
            raise ExpressionError(f"Cannot read '{node.attr}' from {type(value).__name__}")
        if node.attr not in value:
            raise ExpressionError(f"Undefined field: {node.attr}")
        return value[node.attr]

    def visit_Subscript(self, node):
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(key, str) and key.startswith("_"):
            raise ExpressionError(f"Access to '{key}' is not allowed")
        if not isinstance(value, (Mapping, list, tuple, str)):
            raise ExpressionError(f"Cannot index {type(value).__name__}")
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Lookup failed: {e}") from e

    def visit_List(self, node):
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Dict(self, node):
        if any(key is None for key in node.keys):
            raise ExpressionError("Dict unpacking is not allowed")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_BinOp(self, node):
        op_type = type(node.op)
        if op_type not in SAFE_OPERATORS:
            raise ExpressionError(f"Operator not allowed: {op_type.__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)
        return SAFE_OPERATORS[op_type](left, right)

    def visit_UnaryOp(self, node):
        op_type = type(node.op)
        if op_type not in SAFE_OPERATORS:
            raise ExpressionError(f"Operator not allowed: {op_type.__name__}")
        return SAFE_OPERATORS[op_type](self.visit(node.operand))

    def visit_Compare(self, node):
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            op_type = type(op)
            if op_type not in SAFE_OPERATORS:
                raise ExpressionError(f"Operator not allowed: {op_type.__name__}")
            right = self.visit(comparator)
            if not SAFE_OPERATORS[op_type](left, right):
                return False
            left = right
        return True

    def visit_BoolOp(self, node):
        # Short-circuits and returns operand values like Python does
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_IfExp(self, node):
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node):
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            name = getattr(node.func, "id", getattr(node.func, "attr", "unknown"))
            raise ExpressionError(f"Function not allowed: {name}")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not allowed")
        args = [self.visit(arg) for arg in node.args]
        return SAFE_FUNCTIONS[node.func.id](*args)


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """
    Parse an expression into an AST.

    Args:
        expression: Expression source

    Returns:
        Parsed expression tree

    Raises:
        ExpressionError: If the expression is empty, too long or not valid syntax
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    try:
        return ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e


def evaluate(expression: str, variables: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression against a set of variables.

    Args:
        expression: Expression source
        variables: Names visible to the expression

    Returns:
        The expression's value

    Raises:
        ExpressionError: On any parse or evaluation failure
    """
    tree = compile_expression(expression)
    try:
        return SafeEvaluator(variables).visit(tree)
    except ExpressionError:
        raise
    except (TypeError, ValueError, ZeroDivisionError, OverflowError) as e:
        raise ExpressionError(f"Evaluation failed: {e}") from e
    except (MemoryError, RecursionError) as e:
        raise ExpressionError(f"Expression exhausted resources: {type(e).__name__}") from e


def evaluate_bool(expression: str, variables: Mapping[str, Any]) -> bool:
    """Evaluate an expression and coerce the result to bool."""
    return bool(evaluate(expression, variables))


def build_namespace(*sources: Mapping[str, Any], **extra: Any) -> Dict[str, Any]:
    """Merge mappings into one namespace, later sources winning."""
    namespace: Dict[str, Any] = {}
    for source in sources:
        namespace.update(source)
    namespace.update(extra)
    return namespace
