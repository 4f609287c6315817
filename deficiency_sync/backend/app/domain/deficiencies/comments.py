# backend/app/domain/deficiencies/comments.py
from __future__ import annotations

from functools import lru_cache
from typing import Any, Mapping

from jinja2 import Environment, Template

_env = Environment(autoescape=False, keep_trailing_newline=False, trim_blocks=False)


@lru_cache(maxsize=128)
def _compile(source: str) -> Template:
    return _env.from_string(source)


def drop_falsy(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v}


def render_comment(template: str, fields: Mapping[str, Any]) -> str:
    """
    Render a comment template. Falsy fields are removed first so their
    placeholders render empty and `{% if %}` guards around them collapse.
    """
    return _compile(template).render(**drop_falsy(fields)).strip()
