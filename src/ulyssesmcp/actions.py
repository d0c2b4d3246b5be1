"""
Action Registry and Parameter Validator.

The registry is the whitelist: only actions registered here can ever be
turned into a URL. Each action is classified once, at import time, as
destructive or not (destructive actions are rate limited) and as needing
a correlated response or not (those wait for a callback artifact).

The validators are pure functions. They run before any external
invocation and raise InvalidInput subclasses on failure.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ulyssesmcp.errors import InvalidEnum, MissingField, TooLong, UnknownAction


@dataclass(frozen=True)
class Action:
    """A Ulysses x-callback-url action and its classification."""
    name: str
    is_whitelisted: bool = True
    is_destructive: bool = False
    needs_response: bool = False


ALLOWED_ACTIONS = (
    "new-sheet",
    "new-group",
    "insert",
    "attach-note",
    "attach-keywords",
    "attach-image",
    "open",
    "open-all",
    "open-recent",
    "open-favorites",
    "get-version",
    "authorize",
    "read-sheet",
    "get-item",
    "get-root-items",
    "move",
    "copy",
    "trash",
    "set-group-title",
    "set-sheet-title",
    "remove-keywords",
    "update-note",
    "remove-note",
)

DESTRUCTIVE_ACTIONS = frozenset({
    "trash",
    "move",
    "set-group-title",
    "set-sheet-title",
    "remove-keywords",
    "remove-note",
    "update-note",
})

CALLBACK_ACTIONS = frozenset({
    "authorize",
    "read-sheet",
    "get-item",
    "get-root-items",
    "get-version",
})


@dataclass
class ActionRegistry:
    """
    Registry of known actions.

    Construct one per bridge; tests build their own with a custom action set.
    """

    _actions: dict[str, Action] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "ActionRegistry":
        """Registry holding the full Ulysses action whitelist."""
        registry = cls()
        for name in ALLOWED_ACTIONS:
            registry.register(Action(
                name=name,
                is_destructive=name in DESTRUCTIVE_ACTIONS,
                needs_response=name in CALLBACK_ACTIONS,
            ))
        return registry

    def register(self, action: Action) -> None:
        self._actions[action.name] = action

    def get(self, name: str) -> Action | None:
        return self._actions.get(name)

    def validate_action(self, name: str) -> Action:
        """Return the whitelisted action called ``name`` or raise UnknownAction."""
        action = self._actions.get(name)
        if action is None or not action.is_whitelisted:
            raise UnknownAction(name)
        return action

    @property
    def action_names(self) -> list[str]:
        return list(self._actions.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)


def validate_required(value: Any, field_name: str) -> str:
    """Return ``value`` as a trimmed, non-empty string."""
    if value is None:
        raise MissingField(f"{field_name} is required", field=field_name)

    str_value = str(value).strip()
    if str_value == "":
        raise MissingField(f"{field_name} cannot be empty", field=field_name)

    return str_value


def validate_enum(
    value: str | None, allowed_values: Sequence[str], field_name: str
) -> str | None:
    """Check ``value`` against a closed set. None passes through for optional fields."""
    if value is None:
        return None

    if value not in allowed_values:
        raise InvalidEnum(
            f"{field_name} must be one of: {', '.join(allowed_values)}",
            field=field_name,
        )

    return value


def validate_length(value: str, max_length: int, field_name: str) -> str:
    """Reject values longer than ``max_length`` characters; equal is accepted."""
    if len(value) > max_length:
        raise TooLong(
            f"{field_name} exceeds maximum length of {max_length} characters",
            field=field_name,
        )
    return value

