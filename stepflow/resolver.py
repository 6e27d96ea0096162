"""Template resolution of step configuration against an execution context.

Two fragment shapes are understood inside string values:

``{{ expr }}``
    evaluated and substituted textually, the result is always a string.
``${{ expr }}``
    evaluated and, when the fragment is the whole string, returned with
    its native type (numbers, lists, mappings pass through untouched).

Expressions use the Jinja2 expression language inside a sandbox. Unknown
names are errors rather than silently rendering as empty strings.
"""

from __future__ import annotations

import copy
import functools
import logging
import re
from typing import Any, Callable, Dict, Mapping, Tuple

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from .constants import EXPRESSION_CACHE_SIZE
from .contracts import StepType
from .errors import ExpressionError

logger = logging.getLogger(__name__)

FRAGMENT_PATTERN = re.compile(r"(\$?)\{\{\s*(.+?)\s*\}\}", re.DOTALL)

# Config keys evaluated by the executor itself rather than resolved up front.
DEFERRED_KEYS: Dict[StepType, Tuple[str, ...]] = {
    StepType.TRANSFORM: ("expression",),
    StepType.CONDITIONAL: ("condition",),
    StepType.PARALLEL: ("steps",),
}


class ExpressionResolver:
    """Evaluates expressions and resolves nested configuration."""

    def __init__(
        self,
        environment: SandboxedEnvironment | None = None,
        cache_size: int = EXPRESSION_CACHE_SIZE,
    ) -> None:
        self._env = environment or SandboxedEnvironment(undefined=StrictUndefined)
        self._compile = functools.lru_cache(maxsize=cache_size)(self._compile_expression)

    def _compile_expression(self, expression: str) -> Callable[..., Any]:
        try:
            return self._env.compile_expression(expression, undefined_to_none=False)
        except TemplateError as exc:
            raise ExpressionError(f"Invalid expression {expression!r}: {exc}") from exc

    def cache_info(self) -> Any:
        """Hit/miss statistics of the compiled expression cache."""
        return self._compile.cache_info()

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        """Evaluate a bare expression such as ``steps.step_a.body.id``."""
        compiled = self._compile(expression.strip())
        try:
            value = compiled(**context)
        except TemplateError as exc:
            raise ExpressionError(f"Cannot evaluate {expression!r}: {exc}") from exc
        except Exception as exc:
            raise ExpressionError(
                f"Cannot evaluate {expression!r}: {type(exc).__name__}: {exc}"
            ) from exc
        if isinstance(value, Undefined):
            raise ExpressionError(f"Expression {expression!r} is undefined")
        return value

    def resolve_value(self, value: Any, context: Mapping[str, Any]) -> Any:
        if isinstance(value, dict):
            return {key: self.resolve_value(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, context) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve_value(item, context) for item in value)
        if isinstance(value, str):
            return self._resolve_string(value, context)
        return value

    def _resolve_string(self, text: str, context: Mapping[str, Any]) -> Any:
        stripped = text.strip()
        fragments = list(FRAGMENT_PATTERN.finditer(stripped))
        if not fragments:
            return text
        only = fragments[0]
        if len(fragments) == 1 and only.group(1) == "$" and only.span() == (0, len(stripped)):
            return copy.deepcopy(self.evaluate(only.group(2), context))

        def _substitute(match: re.Match[str]) -> str:
            value = self.evaluate(match.group(2), context)
            return "" if value is None else str(value)

        return FRAGMENT_PATTERN.sub(_substitute, text)

    def resolve(self, config: Dict[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a resolved deep copy of ``config``. Inputs are never modified."""
        return self.resolve_value(config, context)

    def resolve_step_config(
        self, step_type: StepType, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Resolve ``config`` for a step, leaving its deferred keys untouched."""
        deferred = DEFERRED_KEYS.get(step_type, ())
        resolved = {
            key: value if key in deferred else self.resolve_value(value, context)
            for key, value in config.items()
        }
        return copy.deepcopy(resolved)

    def evaluate_field(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Evaluate a deferred value.

        A string that is exactly one ``{{ }}`` or ``${{ }}`` fragment is
        evaluated natively, so ``"{{ input.n > 5 }}"`` yields a boolean.
        Other strings holding fragments are resolved as templates, the rest
        are bare expressions. Non-strings are returned as is.
        """
        if not isinstance(value, str):
            return value
        stripped = value.strip()
        fragments = list(FRAGMENT_PATTERN.finditer(stripped))
        if not fragments:
            return self.evaluate(value, context)
        if len(fragments) == 1 and fragments[0].span() == (0, len(stripped)):
            return copy.deepcopy(self.evaluate(fragments[0].group(2), context))
        return self.resolve_value(value, context)


_default_resolver = ExpressionResolver()


def resolve(config: Dict[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    """Resolve ``config`` with the module level resolver."""
    return _default_resolver.resolve(config, context)


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    return _default_resolver.evaluate(expression, context)


def get_resolver() -> ExpressionResolver:
    return _default_resolver
