"""Sandboxed Jinja2 rendering for workflow action configs (email subjects, webhook bodies...)."""

from __future__ import annotations

from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined, meta
from jinja2.sandbox import ImmutableSandboxedEnvironment

# Names a config template may reference; see action_exec.render_context.
RENDER_ROOTS = ("entity", "event", "workflow")

_ALLOWED_FILTERS = {
    "default",
    "lower",
    "upper",
    "title",
    "trim",
    "replace",
    "round",
    "length",
    "int",
    "float",
    "join",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
    "equalto",
}


def _currency(value: Any, symbol: str = "$") -> str:
    if isinstance(value, Undefined) or isinstance(value, bool):
        return ""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return ""
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    env.filters["currency"] = _currency
    env.tests = {key: val for key, val in env.tests.items() if key in _ALLOWED_TESTS}
    return env


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _plain(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(val) for val in value]
    return str(value)


def _is_template(text: Any) -> bool:
    return isinstance(text, str) and ("{{" in text or "{%" in text)


def render_template(text: str | None, context: dict[str, Any], strict: bool = False) -> str:
    return _env(strict=strict).from_string(text or "").render(_plain(context or {}))


def render_config(value: Any, context: dict[str, Any]) -> Any:
    """Render every templated string inside an action config, leaving the rest as-is.

    Missing fields render as empty strings.
    """
    if isinstance(value, str):
        return render_template(value, context) if _is_template(value) else value
    if isinstance(value, list):
        return [render_config(item, context) for item in value]
    if isinstance(value, dict):
        return {key: render_config(val, context) for key, val in value.items()}
    return value


def template_errors(label: str, text: Any) -> list[dict]:
    """Syntax errors and references outside the render roots, for save-time validation."""
    if not _is_template(text):
        return []
    try:
        parsed = _env(strict=False).parse(text)
    except TemplateSyntaxError as exc:
        return [{"message": f"{label}: {exc.message}", "line": exc.lineno or 1}]
    unknown = sorted(meta.find_undeclared_variables(parsed) - set(RENDER_ROOTS))
    return [{"message": f"{label}: unknown variable '{name}'", "line": 1} for name in unknown]
