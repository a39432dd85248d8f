"""Template and expression resolution for pipeline definitions.

Resolves ``{{ expression }}`` templates in step inputs and environment
values against the run's namespace, and evaluates the boolean expression
language used by ``when: {expression: ...}`` predicates.

Supports:
    - Dotted path access: ``{{ env.BRANCH_NAME }}``
    - Index access: ``{{ params.targets[0] }}``
    - Filter functions: ``{{ params.count | int }}``
    - Comparisons: ``==``, ``!=`` and ``=~`` (glob match)
    - Boolean composition: ``and``, ``or``, ``not`` and parentheses
    - Literals: quoted strings, numbers, ``true``/``false``/``null``

The resolver is intentionally small: no Jinja2, no arbitrary code execution.
Known namespace roots are ``env``, ``params`` and ``build``.
"""

from __future__ import annotations

import fnmatch
import functools
import logging
import re
from typing import Any, Mapping

logger = logging.getLogger("conveyor.pipeline.templates")

KNOWN_ROOTS = frozenset({"env", "params", "build"})

# Matches {{ expression }} with optional whitespace
_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# Matches a filter: expr | filter_name
_FILTER_RE = re.compile(r"^(.+?)\s*\|\s*([a-zA-Z_][a-zA-Z0-9_]*)$")

# Matches dotted path with optional array index: params.targets[0].name
_PATH_SEGMENT_RE = re.compile(r"([a-zA-Z_][a-zA-Z0-9_]*)(?:\[(\d+)\])?")

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"[^"]*"|'[^']*')
      | (?P<op>==|!=|=~|\(|\))
      | (?P<number>-?\d+(?:\.\d+)?(?![\w.]))
      | (?P<word>[a-zA-Z_][a-zA-Z0-9_]*(?:\[\d+\])?(?:\.[a-zA-Z_][a-zA-Z0-9_]*(?:\[\d+\])?)*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not"}
_LITERAL_WORDS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}

_FALSY_STRINGS = {"", "false", "0", "no", "off"}


# ── Expression parsing ───────────────────────────────────────────────────────


def _tokenize(expr: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = expr.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            msg = f"Unexpected character at position {pos} in expression: {expr!r}"
            raise ValueError(msg)
        kind = match.lastgroup
        value = match.group(kind)  # type: ignore[arg-type]
        if kind == "word" and value in _KEYWORDS:
            kind = "keyword"
        tokens.append((kind, value))  # type: ignore[arg-type]
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing a small tuple-based AST."""

    def __init__(self, expr: str):
        self._expr = expr
        self._tokens = _tokenize(expr)
        self._pos = 0

    def parse(self) -> tuple:
        if not self._tokens:
            msg = "Empty expression"
            raise ValueError(msg)
        node = self._or()
        if self._pos != len(self._tokens):
            msg = f"Unexpected token {self._tokens[self._pos][1]!r} in expression: {self._expr!r}"
            raise ValueError(msg)
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            msg = f"Unexpected end of expression: {self._expr!r}"
            raise ValueError(msg)
        self._pos += 1
        return token

    def _or(self) -> tuple:
        parts = [self._and()]
        while self._peek() == ("keyword", "or"):
            self._take()
            parts.append(self._and())
        return parts[0] if len(parts) == 1 else ("or", tuple(parts))

    def _and(self) -> tuple:
        parts = [self._not()]
        while self._peek() == ("keyword", "and"):
            self._take()
            parts.append(self._not())
        return parts[0] if len(parts) == 1 else ("and", tuple(parts))

    def _not(self) -> tuple:
        if self._peek() == ("keyword", "not"):
            self._take()
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> tuple:
        left = self._operand()
        token = self._peek()
        if token and token[0] == "op" and token[1] in ("==", "!=", "=~"):
            self._take()
            right = self._operand()
            return ("cmp", token[1], left, right)
        return left

    def _operand(self) -> tuple:
        kind, value = self._take()
        if kind == "op" and value == "(":
            node = self._or()
            if self._take() != ("op", ")"):
                msg = f"Unbalanced parentheses in expression: {self._expr!r}"
                raise ValueError(msg)
            return node
        if kind == "string":
            return ("lit", value[1:-1])
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "word":
            if value in _LITERAL_WORDS:
                return ("lit", _LITERAL_WORDS[value])
            return ("path", value)
        msg = f"Unexpected token {value!r} in expression: {self._expr!r}"
        raise ValueError(msg)


@functools.lru_cache(maxsize=512)
def parse_expression(expr: str) -> tuple:
    """Parse an expression into an AST. Raises ValueError on syntax errors."""
    return _Parser(expr).parse()


def expression_paths(expr: str) -> list[str]:
    """Return every dotted path referenced by an expression (filters stripped)."""
    filter_match = _FILTER_RE.match(expr.strip())
    if filter_match:
        expr = filter_match.group(1)
    paths: list[str] = []

    def _walk(node: tuple) -> None:
        tag = node[0]
        if tag == "path":
            paths.append(node[1])
        elif tag in ("or", "and"):
            for child in node[1]:
                _walk(child)
        elif tag == "not":
            _walk(node[1])
        elif tag == "cmp":
            _walk(node[2])
            _walk(node[3])

    _walk(parse_expression(expr))
    return paths


def template_expressions(value: Any) -> list[str]:
    """Collect all ``{{ }}`` expressions found in a (nested) value."""
    found: list[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in _TEMPLATE_RE.finditer(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            found.extend(template_expressions(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(template_expressions(item))
    return found


def is_truthy(value: Any) -> bool:
    """Truthiness that treats "false"/"0"/"no"/"off" strings as false."""
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        flag, other = (left, right) if isinstance(left, bool) else (right, left)
        return isinstance(other, str) and other.strip().lower() == str(flag).lower()
    # env values are strings; compare "3" == 3 textually
    if isinstance(left, str) != isinstance(right, str):
        return str(left) == str(right)
    return False


# ── Resolver ─────────────────────────────────────────────────────────────────


class TemplateResolver:
    """Resolves ``{{ expression }}`` templates against a namespace of values.

    Usage::

        resolver = TemplateResolver({
            "env": context.environment(),
            "params": context.parameters,
        })
        result = resolver.resolve("deploy to {{ env.TARGET }}")
        # → "deploy to staging"

    ``missing`` is the value produced for unresolvable paths (``None`` by
    default; conditions use ``""`` so that undefined names compare as empty).
    """

    def __init__(
        self,
        namespace: dict[str, Any] | None = None,
        *,
        filters: dict[str, Any] | None = None,
        missing: Any = None,
    ):
        self._namespace = namespace or {}
        self._filters: dict[str, Any] = filters or {}
        self._missing = missing

    def resolve(self, value: Any) -> Any:
        """Resolve template expressions in a value.

        - Strings with ``{{ }}`` are resolved.
        - Mappings come back as dicts with their values recursively resolved.
        - Lists and tuples come back as lists with their items resolved.
        - Other types are returned as-is.
        """
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, Mapping):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        return value

    def resolve_expr(self, expr: str) -> Any:
        """Resolve a single expression string (without {{ }} delimiters).

        Returns the resolved value, or ``missing`` if the path does not exist.
        Malformed expressions also resolve to ``missing`` and are logged.
        """
        filter_match = _FILTER_RE.match(expr.strip())
        if filter_match:
            inner_value = self.resolve_expr(filter_match.group(1).strip())
            return self._apply_filter(filter_match.group(2), inner_value)

        try:
            tree = parse_expression(expr.strip())
        except ValueError as exc:
            logger.warning("Unparseable expression %r: %s", expr, exc)
            return self._missing
        return self._eval(tree)

    def evaluate_bool(self, expr: str) -> bool:
        """Evaluate an expression and coerce the result to a boolean."""
        return is_truthy(self.resolve_expr(expr))

    def _eval(self, node: tuple) -> Any:
        tag = node[0]
        if tag == "lit":
            return node[1]
        if tag == "path":
            return self._resolve_path(node[1])
        if tag == "not":
            return not is_truthy(self._eval(node[1]))
        if tag == "and":
            return all(is_truthy(self._eval(child)) for child in node[1])
        if tag == "or":
            return any(is_truthy(self._eval(child)) for child in node[1])
        if tag == "cmp":
            op, left, right = node[1], self._eval(node[2]), self._eval(node[3])
            if op == "==":
                return loose_equals(left, right)
            if op == "!=":
                return not loose_equals(left, right)
            return fnmatch.fnmatchcase("" if left is None else str(left), str(right))
        return self._missing

    def _resolve_string(self, text: str) -> Any:
        """Resolve all ``{{ }}`` expressions in a string.

        If the entire string is a single expression, return the raw value
        (preserving type). Otherwise, interpolate as string.
        """
        if "{{" not in text:
            return text

        stripped = text.strip()
        single_match = re.fullmatch(r"\{\{\s*([^{}]+?)\s*\}\}", stripped)
        if single_match:
            return self.resolve_expr(single_match.group(1))

        def _replacer(m: re.Match) -> str:
            result = self.resolve_expr(m.group(1))
            if result is None:
                return ""
            return str(result)

        return _TEMPLATE_RE.sub(_replacer, text)

    def _resolve_path(self, path: str) -> Any:
        """Resolve a dotted path like ``params.targets[0]`` against the namespace."""
        current: Any = self._namespace

        for segment in path.strip().split("."):
            if current is None:
                return self._missing

            match = _PATH_SEGMENT_RE.fullmatch(segment)
            if not match:
                return self._missing

            key = match.group(1)
            idx_str = match.group(2)

            if isinstance(current, dict):
                if key not in current:
                    return self._missing
                current = current[key]
            elif hasattr(current, key):
                current = getattr(current, key)
            else:
                return self._missing

            if idx_str is not None:
                idx = int(idx_str)
                if isinstance(current, (list, tuple)) and 0 <= idx < len(current):
                    current = current[idx]
                else:
                    return self._missing

        return current

    def _apply_filter(self, filter_name: str, value: Any) -> Any:
        """Apply a named filter function to a value."""
        if filter_name in self._filters:
            fn = self._filters[filter_name]
            try:
                return fn(value)
            except Exception:
                logger.warning("Filter '%s' failed on value %r", filter_name, value)
                return value

        if filter_name == "str":
            return str(value) if value is not None else ""
        if filter_name == "int":
            try:
                return int(value)
            except (ValueError, TypeError):
                return 0
        if filter_name == "bool":
            return is_truthy(value)
        if filter_name == "lower":
            return str(value).lower() if value is not None else ""
        if filter_name == "upper":
            return str(value).upper() if value is not None else ""
        if filter_name == "default":
            return value if value is not None else ""

        logger.warning("Unknown template filter: '%s'", filter_name)
        return value
