"""
Node construction helpers.

libcst never adds parentheses on its own, so every builder that embeds an
expression into a context with tighter binding runs it through
`parenthesize`.
"""

from typing import List, Optional, Sequence, Tuple, Union

import libcst as cst

Expression = Union[str, cst.BaseExpression]

_ATOMS = (
  cst.Name,
  cst.Attribute,
  cst.Call,
  cst.Subscript,
  cst.Integer,
  cst.Float,
  cst.Imaginary,
  cst.SimpleString,
  cst.ConcatenatedString,
  cst.FormattedString,
  cst.List,
  cst.Set,
  cst.Dict,
  cst.ListComp,
  cst.SetComp,
  cst.DictComp,
  cst.GeneratorExp,
  cst.Ellipsis,
)


def to_expr(value: Expression) -> cst.BaseExpression:
  return cst.Name(value) if isinstance(value, str) else value


def parenthesize(expression: cst.BaseExpression) -> cst.BaseExpression:
  """Wraps `expression` in parentheses unless it is atomic or already wrapped."""
  if isinstance(expression, _ATOMS) or expression.lpar:
    return expression
  return expression.with_changes(lpar=[cst.LeftParen()], rpar=[cst.RightParen()])


def _argument(value: cst.BaseExpression) -> cst.BaseExpression:
  if isinstance(value, (cst.Tuple, cst.NamedExpr, cst.Yield)) and not value.lpar:
    return parenthesize(value)
  return value


def call(func: Expression, *args: Optional[Expression]) -> cst.Call:
  """Builds `func(arg, ...)`; a `None` argument becomes the literal `None`."""
  values = [cst.Name("None") if arg is None else to_expr(arg) for arg in args]
  return cst.Call(func=to_expr(func), args=[cst.Arg(_argument(value)) for value in values])


def line(*smalls: cst.BaseSmallStatement) -> cst.SimpleStatementLine:
  return cst.SimpleStatementLine(body=list(smalls))


def assign(target: Expression, value: Expression) -> cst.SimpleStatementLine:
  return line(cst.Assign(targets=[cst.AssignTarget(target=to_expr(target))], value=to_expr(value)))


def declare(name: str) -> cst.SimpleStatementLine:
  """`name: object`, which makes `name` local without binding it."""
  return line(cst.AnnAssign(target=cst.Name(name), annotation=cst.Annotation(cst.Name("object")), value=None))


def return_(value: Optional[Expression] = None) -> cst.SimpleStatementLine:
  return line(cst.Return(value=to_expr(value) if value is not None else None))


def expr_statement(value: cst.BaseExpression) -> cst.SimpleStatementLine:
  return line(cst.Expr(value=value))


def nonlocal_(names: Sequence[str]) -> cst.SimpleStatementLine:
  return line(cst.Nonlocal(names=[cst.NameItem(cst.Name(n)) for n in names]))


def global_(names: Sequence[str]) -> cst.SimpleStatementLine:
  return line(cst.Global(names=[cst.NameItem(cst.Name(n)) for n in names]))


def block(statements: Sequence[cst.BaseStatement]) -> cst.IndentedBlock:
  return cst.IndentedBlock(body=list(statements))


def if_(
  test: cst.BaseExpression,
  body: Sequence[cst.BaseStatement],
  orelse: Optional[Union[Sequence[cst.BaseStatement], cst.If]] = None,
) -> cst.If:
  """Builds an `if`; a nested `cst.If` as `orelse` renders as `elif`."""
  if orelse is None or isinstance(orelse, cst.If):
    else_part = orelse
  else:
    else_part = cst.Else(body=block(orelse))
  return cst.If(test=test, body=block(body), orelse=else_part)


def not_(expression: cst.BaseExpression) -> cst.BaseExpression:
  if isinstance(expression, cst.UnaryOperation) and isinstance(expression.operator, cst.Not):
    inner = expression.expression
    return inner.with_changes(lpar=[], rpar=[]) if isinstance(inner, _ATOMS) else inner
  return cst.UnaryOperation(operator=cst.Not(), expression=parenthesize(expression))


def or_(expressions: Sequence[cst.BaseExpression]) -> cst.BaseExpression:
  result = parenthesize(expressions[0]) if len(expressions) > 1 else expressions[0]
  for expression in expressions[1:]:
    result = cst.BooleanOperation(left=result, operator=cst.Or(), right=parenthesize(expression))
  return result


def and_(left: cst.BaseExpression, right: cst.BaseExpression) -> cst.BooleanOperation:
  return cst.BooleanOperation(left=parenthesize(left), operator=cst.And(), right=parenthesize(right))


def if_exp(test: cst.BaseExpression, body: cst.BaseExpression, orelse: cst.BaseExpression) -> cst.IfExp:
  return cst.IfExp(test=parenthesize(test), body=parenthesize(body), orelse=parenthesize(orelse))


def parameters(names: Sequence[str]) -> cst.Parameters:
  return cst.Parameters(params=[cst.Param(cst.Name(n)) for n in names])


def function_def(name: str, params: Sequence[str], body: Sequence[cst.BaseStatement]) -> cst.FunctionDef:
  return cst.FunctionDef(name=cst.Name(name), params=parameters(params), body=block(body))


def lambda_(params: Sequence[str], body: cst.BaseExpression) -> cst.Lambda:
  if isinstance(body, cst.Tuple) and not body.lpar:
    body = parenthesize(body)
  return cst.Lambda(params=parameters(params), body=body)


def tuple_(elements: Sequence[Optional[Expression]]) -> cst.Tuple:
  values = [cst.Name("None") if e is None else _argument(to_expr(e)) for e in elements]
  return cst.Tuple(elements=[cst.Element(v) for v in values], lpar=[cst.LeftParen()], rpar=[cst.RightParen()])


def list_(elements: Sequence[cst.BaseExpression]) -> cst.List:
  return cst.List(elements=[cst.Element(e) for e in elements])


def is_name(node: Optional[cst.CSTNode], value: Optional[str] = None) -> bool:
  return isinstance(node, cst.Name) and (value is None or node.value == value)


def statement_list(node: Union[cst.BaseSuite, cst.CSTNode]) -> List[cst.BaseStatement]:
  """
  Statements of a suite. A one-line suite (`if x: a; b`) is expanded into
  separate statement lines.
  """
  if isinstance(node, cst.SimpleStatementSuite):
    return [line(small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT)) for small in node.body]
  return list(node.body)


def split_docstring(
  statements: List[cst.BaseStatement],
) -> Tuple[List[cst.BaseStatement], List[cst.BaseStatement]]:
  if statements and isinstance(statements[0], cst.SimpleStatementLine) and len(statements[0].body) == 1:
    small = statements[0].body[0]
    if isinstance(small, cst.Expr) and isinstance(small.value, (cst.SimpleString, cst.ConcatenatedString)):
      return statements[:1], statements[1:]
  return [], statements
