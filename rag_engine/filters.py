"""
过滤表达式解析
把管理接口使用的表达式（如 id == 'xxx'、text like '%关键词%'、
metadata["chunkIndex"] >= 2 and id in ['a', 'b']）转换为 Qdrant Filter
"""
import re
from typing import Any, List, Optional, Tuple, Union

from qdrant_client.http import models as qmodels

from rag_engine.errors import InvalidRequestError

Condition = Union[qmodels.FieldCondition, qmodels.Filter]

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|>=|<=|>|<|&&|\|\||!|\(|\)|\[|\]|,|\.)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "like", "true", "false"}


def _tokenize(expr: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    expr = expr.strip()
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if not match or match.end() == pos:
            raise InvalidRequestError(f"过滤表达式无法解析（位置 {pos}）: {expr}")
        pos = match.end()
        if match.group("string") is not None:
            raw = match.group("string")[1:-1]
            tokens.append(("string", re.sub(r"\\(.)", r"\1", raw)))
        elif match.group("number") is not None:
            raw = match.group("number")
            tokens.append(("number", float(raw) if "." in raw else int(raw)))
        elif match.group("op") is not None:
            tokens.append(("op", match.group("op")))
        else:
            word = match.group("ident")
            if word.lower() in _KEYWORDS:
                tokens.append(("kw", word.lower()))
            else:
                tokens.append(("ident", word))
        # 吃掉尾部空白
        while pos < len(expr) and expr[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, Any]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, Any]:
        token = self._peek()
        if token is None:
            raise InvalidRequestError(f"过滤表达式不完整: {self.expr}")
        self.pos += 1
        return token

    def _accept(self, kind: str, value: Any = None) -> bool:
        token = self._peek()
        if token and token[0] == kind and (value is None or token[1] == value):
            self.pos += 1
            return True
        return False

    def _expect(self, kind: str, value: Any = None) -> Tuple[str, Any]:
        token = self._next()
        if token[0] != kind or (value is not None and token[1] != value):
            raise InvalidRequestError(f"过滤表达式语法错误，期望 {value or kind}，实际 {token[1]!r}: {self.expr}")
        return token

    def parse(self) -> qmodels.Filter:
        node = self._or()
        if self._peek() is not None:
            raise InvalidRequestError(f"过滤表达式存在多余内容 {self._peek()[1]!r}: {self.expr}")
        if isinstance(node, qmodels.Filter):
            return node
        return qmodels.Filter(must=[node])

    def _or(self) -> Condition:
        items = [self._and()]
        while self._accept("kw", "or") or self._accept("op", "||"):
            items.append(self._and())
        return items[0] if len(items) == 1 else qmodels.Filter(should=items)

    def _and(self) -> Condition:
        items = [self._not()]
        while self._accept("kw", "and") or self._accept("op", "&&"):
            items.append(self._not())
        return items[0] if len(items) == 1 else qmodels.Filter(must=items)

    def _not(self) -> Condition:
        if self._accept("kw", "not") or self._accept("op", "!"):
            return qmodels.Filter(must_not=[self._not()])
        return self._atom()

    def _atom(self) -> Condition:
        if self._accept("op", "("):
            node = self._or()
            self._expect("op", ")")
            return node
        return self._comparison()

    def _field(self) -> str:
        _, name = self._expect("ident")
        parts = [name]
        while True:
            if self._accept("op", "["):
                _, key = self._expect("string")
                self._expect("op", "]")
                parts.append(key)
            elif self._accept("op", "."):
                _, key = self._expect("ident")
                parts.append(key)
            else:
                break
        return ".".join(parts)

    def _value(self) -> Any:
        kind, value = self._next()
        if kind in ("string", "number"):
            return value
        if kind == "kw" and value in ("true", "false"):
            return value == "true"
        raise InvalidRequestError(f"过滤表达式中的值无效 {value!r}: {self.expr}")

    def _list(self) -> List[Any]:
        self._expect("op", "[")
        values = []
        if not self._accept("op", "]"):
            values.append(self._value())
            while self._accept("op", ","):
                values.append(self._value())
            self._expect("op", "]")
        if not values:
            raise InvalidRequestError(f"in 列表不能为空: {self.expr}")
        return values

    def _comparison(self) -> Condition:
        key = self._field()

        if self._accept("kw", "not"):
            self._expect("kw", "in")
            return qmodels.Filter(must_not=[_match_any(key, self._list())])
        if self._accept("kw", "in"):
            return _match_any(key, self._list())
        if self._accept("kw", "like"):
            _, pattern = self._expect("string")
            return _like(key, pattern)

        _, op = self._expect("op")
        value = self._value()
        if op == "==":
            return qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=value))
        if op == "!=":
            return qmodels.Filter(
                must_not=[qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=value))]
            )
        if op in (">", ">=", "<", "<="):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidRequestError(f"比较运算 {op} 只支持数字: {self.expr}")
            bound = {">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}[op]
            return qmodels.FieldCondition(key=key, range=qmodels.Range(**{bound: value}))
        raise InvalidRequestError(f"不支持的运算符 {op}: {self.expr}")


def _match_any(key: str, values: List[Any]) -> qmodels.FieldCondition:
    return qmodels.FieldCondition(key=key, match=qmodels.MatchAny(any=values))


def _like(key: str, pattern: str) -> qmodels.FieldCondition:
    needle = pattern.strip("%")
    if not needle:
        raise InvalidRequestError("like 表达式的关键词不能为空")
    if "%" in pattern:
        return qmodels.FieldCondition(key=key, match=qmodels.MatchText(text=needle))
    return qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=needle))


def parse_filter_expr(expr: Optional[str]) -> Optional[qmodels.Filter]:
    """解析过滤表达式；空表达式返回 None（不过滤）"""
    if expr is None or not expr.strip():
        return None
    try:
        return _Parser(expr).parse()
    except ValueError as e:
        # 如 in 列表混用字符串和数字，Qdrant 模型校验不通过
        raise InvalidRequestError(f"过滤表达式无效: {expr} ({e})") from e
