# backend/app/domain/deficiencies/comment_templates.py
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from .errors import InvalidArgument


@dataclass(frozen=True)
class TransitionRule:
    previous_states: frozenset[str]
    current_states: frozenset[str]
    template: str


@dataclass(frozen=True)
class StateRule:
    state: str
    template: str


@dataclass(frozen=True)
class CommentTemplateConfig:
    transitions: tuple[TransitionRule, ...]
    states: tuple[StateRule, ...]
    default: str


# Templates are Jinja2 sources. Falsy fields are dropped from the render
# context before rendering, so `{% if x %}` guards hide empty lines.
_AUTHOR = "{% if first_name or last_name %} by {{ first_name }} {{ last_name }}{% endif %}{% if email %} ({{ email }}){% endif %}"

DEFAULT_TRANSITIONS: tuple[TransitionRule, ...] = (
    TransitionRule(
        frozenset({"requires-action", "go-back"}),
        frozenset({"pending"}),
        "Deficient Item moved from {{ previous_state }} to {{ current_state }}" + _AUTHOR + ".\n"
        "{% if current_plan_to_fix %}Plan to fix: {{ current_plan_to_fix }}\n{% endif %}"
        "{% if current_responsibility_group %}Responsibility group: {{ current_responsibility_group }}\n{% endif %}"
        "{% if current_due_date_day %}Due date: {{ current_due_date_day }}{% endif %}",
    ),
    TransitionRule(
        frozenset({"pending", "requires-progress-update", "overdue"}),
        frozenset({"pending"}),
        "Deficient Item due date updated" + _AUTHOR + ".\n"
        "{% if previous_due_date_day %}Previous due date: {{ previous_due_date_day }}\n{% endif %}"
        "{% if current_due_date_day %}New due date: {{ current_due_date_day }}\n{% endif %}"
        "{% if current_progress_note %}Progress note: {{ current_progress_note }}{% endif %}",
    ),
    TransitionRule(
        frozenset({"requires-action", "go-back", "pending", "requires-progress-update", "overdue", "incomplete"}),
        frozenset({"deferred"}),
        "Deficient Item moved from {{ previous_state }} to {{ current_state }}" + _AUTHOR + ".\n"
        "{% if current_deferred_date_day %}Deferred until: {{ current_deferred_date_day }}{% endif %}",
    ),
    TransitionRule(
        frozenset({"pending", "requires-progress-update", "overdue"}),
        frozenset({"completed"}),
        "Deficient Item completed" + _AUTHOR + ", moved from {{ previous_state }} to {{ current_state }}.\n"
        "{% if current_progress_note %}Last progress note: {{ current_progress_note }}{% endif %}",
    ),
)

DEFAULT_STATES: tuple[StateRule, ...] = (
    StateRule(
        "incomplete",
        "Deficient Item moved from {{ previous_state }} to {{ current_state }}" + _AUTHOR + ".\n"
        "{% if current_reason_incomplete %}Reason incomplete: {{ current_reason_incomplete }}{% endif %}",
    ),
    StateRule(
        "go-back",
        "Deficient Item sent back from {{ previous_state }} to {{ current_state }}" + _AUTHOR + ". "
        "A new plan to fix and due date are required.",
    ),
    StateRule("closed", "Deficient Item closed" + _AUTHOR + "."),
)

DEFAULT_TEMPLATE = "Deficient Item moved from {{ previous_state }} to {{ current_state }}" + _AUTHOR + "."

PROGRESS_NOTE_TEMPLATE = (
    "Progress Note{% if first_name or last_name %} by {{ first_name }} {{ last_name }}{% endif %}"
    "{% if email %} ({{ email }}){% endif %}:\n{{ progress_note }}"
)

CARD_DESCRIPTION_TEMPLATE = (
    "DEFICIENT ITEM ({{ created_at }})\n"
    "{% if item_score %}Score: {{ item_score }}\n{% endif %}"
    "{% if item_inspector_notes %}Inspector notes: {{ item_inspector_notes }}\n{% endif %}"
    "{% if current_plan_to_fix %}Plan to fix: {{ current_plan_to_fix }}\n{% endif %}"
    "{% if section_title %}Section: {{ section_title }}{% if section_subtitle %} / {{ section_subtitle }}{% endif %}\n{% endif %}"
    "{{ url }}"
)

DEFAULT_CONFIG = CommentTemplateConfig(
    transitions=DEFAULT_TRANSITIONS,
    states=DEFAULT_STATES,
    default=DEFAULT_TEMPLATE,
)


def _str_set(v: Any) -> frozenset[str]:
    if isinstance(v, str):
        return frozenset({v})
    if isinstance(v, Iterable):
        return frozenset(str(x) for x in v if isinstance(x, str) and x)
    return frozenset()


def config_from_dict(raw: dict[str, Any]) -> CommentTemplateConfig:
    """
    {
      "transitions": [{"previous_states": [...], "current_states": [...], "template": "..."}],
      "states": [{"state": "...", "template": "..."}],
      "default": "..."
    }
    """
    if not isinstance(raw, dict):
        raise InvalidArgument("comment template config must be an object")

    default = raw.get("default")
    if not isinstance(default, str) or not default:
        raise InvalidArgument("comment template config requires a non-empty 'default'")

    transitions = tuple(
        TransitionRule(
            previous_states=_str_set(t.get("previous_states")),
            current_states=_str_set(t.get("current_states")),
            template=str(t.get("template") or ""),
        )
        for t in (raw.get("transitions") or [])
        if isinstance(t, dict) and t.get("template")
    )
    states = tuple(
        StateRule(state=str(s.get("state") or ""), template=str(s.get("template") or ""))
        for s in (raw.get("states") or [])
        if isinstance(s, dict) and s.get("state") and s.get("template")
    )
    return CommentTemplateConfig(transitions=transitions, states=states, default=default)


def load_comment_template_config(path: Optional[str]) -> CommentTemplateConfig:
    if not path:
        return DEFAULT_CONFIG
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return config_from_dict(raw)


def select_templates(previous_state: str, current_state: str, config: CommentTemplateConfig) -> list[str]:
    """
    Every applicable template, most specific first:
      1) all matching transition rules, declared order
      2) all matching state rules, declared order
      3) the default, always last

    The list is built fresh on each call; callers may mutate it freely.
    """
    if not isinstance(previous_state, str) or not previous_state:
        raise InvalidArgument("previous_state must be a non-empty string")
    if not isinstance(current_state, str) or not current_state:
        raise InvalidArgument("current_state must be a non-empty string")

    out: list[str] = []
    for rule in config.transitions:
        if previous_state in rule.previous_states and current_state in rule.current_states:
            out.append(rule.template)

    for rule in config.states:
        if rule.state == current_state:
            out.append(rule.template)

    out.append(config.default)
    return out


class CommentTemplateSelector:
    """Holds one loaded configuration; built once at worker start-up and injected into handlers."""

    def __init__(self, config: CommentTemplateConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    @classmethod
    def from_path(cls, path: Optional[str]) -> "CommentTemplateSelector":
        return cls(load_comment_template_config(path))

    def select(self, previous_state: str, current_state: str) -> list[str]:
        return select_templates(previous_state, current_state, self.config)

    def first(self, previous_state: str, current_state: str) -> str:
        return self.select(previous_state, current_state)[0]
