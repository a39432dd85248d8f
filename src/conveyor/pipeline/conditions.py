"""Condition evaluation for ``when`` predicates.

Evaluation is pure and total: it never mutates the context and never
raises. Names that cannot be resolved read as the empty string, so a
predicate over an unset variable is simply false.

Predicate forms:
    - ``branch``      — glob match against ``env.BRANCH_NAME``
    - ``tag``         — glob match against ``env.TAG_NAME`` (false when untagged)
    - ``environment`` — ``{name, value}`` equality
    - ``env_exists``  — the name is bound in any visible frame
    - ``equals``      — ``{actual, expected}`` after template resolution
    - ``expression``  — boolean expression over ``env``, ``params``, ``build``
    - ``all_of`` / ``any_of`` / ``not`` — composition
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Iterator

from conveyor.pipeline.context import ExecutionContext
from conveyor.pipeline.errors import ConditionEvaluationError
from conveyor.pipeline.models import WhenConfig
from conveyor.pipeline.templates import TemplateResolver, loose_equals, template_expressions

logger = logging.getLogger("conveyor.pipeline.conditions")

_WRAPPED_RE = re.compile(r"^\{\{\s*(.+?)\s*\}\}$", re.DOTALL)


def unwrap_expression(expr: str) -> str:
    """Accept both ``env.X == 'y'`` and ``{{ env.X == 'y' }}``."""
    match = _WRAPPED_RE.match(expr.strip())
    return match.group(1) if match else expr.strip()


def iter_expressions(predicate: WhenConfig) -> Iterator[str]:
    """Yield every expression string embedded in a predicate tree."""
    if predicate.expression is not None:
        yield unwrap_expression(predicate.expression)
    if predicate.equals is not None:
        yield from template_expressions(predicate.equals.actual)
        yield from template_expressions(predicate.equals.expected)
    for child in (predicate.all_of or []) + (predicate.any_of or []):
        yield from iter_expressions(child)
    if predicate.not_ is not None:
        yield from iter_expressions(predicate.not_)


class ConditionEvaluator:
    """Decides whether a stage should run given the current context."""

    def evaluate(self, predicate: WhenConfig | None, context: ExecutionContext) -> bool:
        if predicate is None:
            return True
        try:
            return self._evaluate(predicate, context.resolver(missing=""), context.environment())
        except Exception as exc:
            error = ConditionEvaluationError(f"{type(exc).__name__}: {exc}")
            logger.warning("Condition evaluation error, treating as false: %s", error, exc_info=exc)
            return False

    def _evaluate(
        self,
        predicate: WhenConfig,
        resolver: TemplateResolver,
        env: dict[str, str],
    ) -> bool:
        if predicate.branch is not None:
            if not fnmatch.fnmatchcase(env.get("BRANCH_NAME", ""), predicate.branch):
                return False
        if predicate.tag is not None:
            tag = env.get("TAG_NAME", "")
            if not tag or not fnmatch.fnmatchcase(tag, predicate.tag):
                return False
        if predicate.environment is not None:
            if env.get(predicate.environment.name, "") != predicate.environment.value:
                return False
        if predicate.env_exists is not None:
            if predicate.env_exists not in env:
                return False
        if predicate.equals is not None:
            actual = resolver.resolve(predicate.equals.actual)
            expected = resolver.resolve(predicate.equals.expected)
            if not loose_equals(actual, expected):
                return False
        if predicate.expression is not None:
            if not resolver.evaluate_bool(unwrap_expression(predicate.expression)):
                return False
        if predicate.all_of is not None:
            if not all(self._evaluate(p, resolver, env) for p in predicate.all_of):
                return False
        if predicate.any_of is not None:
            if not any(self._evaluate(p, resolver, env) for p in predicate.any_of):
                return False
        if predicate.not_ is not None:
            if self._evaluate(predicate.not_, resolver, env):
                return False
        return True
