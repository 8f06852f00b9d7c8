# ~/repositories/cx-code/src/cx_code/engine/expressions.py

from datetime import datetime, timezone
from typing import Any, Dict

import jmespath
import structlog
from jinja2 import StrictUndefined, TemplateError
from jinja2.nativetypes import NativeEnvironment

logger = structlog.get_logger(__name__)

EXPRESSION_PREFIX = "="


def get_now(tz: str | None = None) -> datetime:
    if tz and tz.lower() == "utc":
        return datetime.now(timezone.utc)
    return datetime.now()


def jmespath_search(data: Any, expression: str) -> Any:
    """Runs a JMESPath query against `data`, argument order as in `$jmesPath`."""
    return jmespath.search(expression, data)


class ExpressionEvaluator:
    """
    Evaluates workflow expressions such as `={{ json.price * 1.2 }}`.

    Expressions are Jinja2 templates rendered with a native environment, so a
    template made of a single `{{ ... }}` block returns the native Python
    value rather than its string form.
    """

    def __init__(self):
        self.jinja_env = NativeEnvironment(undefined=StrictUndefined)
        self.jinja_env.globals["now"] = get_now
        self.jinja_env.filters["jmespath"] = jmespath_search

    def is_expression(self, value: Any) -> bool:
        return isinstance(value, str) and value.startswith(EXPRESSION_PREFIX)

    def evaluate(self, expression: str, variables: Dict[str, Any]) -> Any:
        source = (
            expression[len(EXPRESSION_PREFIX) :]
            if self.is_expression(expression)
            else expression
        )
        if "{{" not in source and "{%" not in source:
            return source
        try:
            return self.jinja_env.from_string(source).render(**variables)
        except TemplateError as e:
            logger.debug("expression.evaluate.failed", expression=expression, error=str(e))
            raise ValueError(f"Invalid expression '{expression}': {e}") from e
