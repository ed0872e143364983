"""
Safe expression evaluation for branch predicates.

Expressions are parsed with ``ast`` and only a whitelisted subset of nodes
is evaluated: literals, names from the supplied context, attribute and
subscript access on dicts and lists, comparisons, boolean logic, basic
arithmetic, and a handful of builtins and string methods. Anything else
raises ValueError before a single sub-expression runs.

    safe_eval("'refund' in output.lower() and len(output) > 20", {"output": text})
"""

from __future__ import annotations

import ast
import operator
from typing import Any

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
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
    "any": any,
    "all": all,
}

SAFE_METHODS = {
    "lower",
    "upper",
    "strip",
    "startswith",
    "endswith",
    "get",
    "keys",
    "values",
    "items",
    "count",
    "split",
}

MAX_EXPRESSION_LENGTH = 500


class _Evaluator:
    def __init__(self, context: dict[str, Any]):
        self.context = {"true": True, "false": False, "null": None, **context}

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ValueError(f"Unsupported expression element: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.context:
            return self.context[node.id]
        raise ValueError(f"Unknown name '{node.id}'")

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, dict):
            return value.get(node.attr)
        raise ValueError(f"Attribute access '.{node.attr}' is only allowed on objects")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError):
            return None

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for v in node.values:
                result = self.visit(v)
                if not result:
                    return result
            return result
        result = False
        for v in node.values:
            result = self.visit(v)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ValueError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ValueError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ValueError("Keyword arguments are not allowed")
        args = [self.visit(a) for a in node.args]
        if isinstance(node.func, ast.Name):
            func = SAFE_FUNCTIONS.get(node.func.id)
            if func is None:
                raise ValueError(f"Function '{node.func.id}' is not allowed")
            return func(*args)
        if isinstance(node.func, ast.Attribute):
            if node.func.attr not in SAFE_METHODS:
                raise ValueError(f"Method '{node.func.attr}' is not allowed")
            target = self.visit(node.func.value)
            if not isinstance(target, str | dict | list) or not hasattr(target, node.func.attr):
                raise ValueError(f"Method '{node.func.attr}' is not allowed on this value")
            return getattr(target, node.func.attr)(*args)
        raise ValueError("Unsupported call")


def safe_eval(expression: str, context: dict[str, Any]) -> Any:
    """Evaluate ``expression`` against ``context``. Raises ValueError if disallowed."""
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ValueError("Expression too long")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {e.msg}") from e
    return _Evaluator(context).visit(tree)
