from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from actiondesk import domain


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    label: str
    description: str
    direct: bool
    schema: dict[str, object]

    def validate_args(self, args: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(args, dict):
            raise ValueError(f"Action '{self.name}' payload must be an object.")

        required = self.schema.get("required")
        required_fields = required if isinstance(required, list) else []
        for field in required_fields:
            if not isinstance(field, str):
                continue
            value = args.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValueError(f"Action '{self.name}' missing required field '{field}'.")

        properties = self.schema.get("properties")
        if not isinstance(properties, dict):
            return dict(args)

        clean: dict[str, Any] = {}
        for key, value in args.items():
            prop = properties.get(key)
            if not isinstance(prop, dict):
                continue
            expected = prop.get("type")
            if expected == "string":
                if not isinstance(value, str):
                    raise ValueError(f"Action '{self.name}' field '{key}' must be a string.")
                clean[key] = value.strip()
            elif expected == "integer":
                if not isinstance(value, int) or isinstance(value, bool):
                    raise ValueError(f"Action '{self.name}' field '{key}' must be an integer.")
                clean[key] = value
            elif expected == "array":
                if not isinstance(value, list):
                    raise ValueError(f"Action '{self.name}' field '{key}' must be an array.")
                clean[key] = value
            else:
                clean[key] = value
        return clean


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: dict[str, ActionDefinition] = {}

    def register(
        self,
        *,
        name: str,
        label: str,
        description: str,
        schema: dict[str, object],
        direct: bool = False,
    ) -> None:
        self._actions[name] = ActionDefinition(
            name=name,
            label=label,
            description=description,
            direct=direct,
            schema=schema,
        )

    def find(self, name: str) -> ActionDefinition | None:
        return self._actions.get((name or "").strip().lower())

    def get_definition(self, name: str) -> ActionDefinition:
        definition = self.find(name)
        if definition is None:
            raise ValueError(f"Action '{name}' is not registered.")
        return definition

    def is_direct(self, name: str) -> bool:
        definition = self.find(name)
        return bool(definition and definition.direct)

    def label_for(self, name: str) -> str:
        definition = self.find(name)
        if definition is None:
            return (name or "action").replace("_", " ")
        return definition.label

    def list_actions(self) -> list[str]:
        return sorted(self._actions.keys())

    def render_for_prompt(self) -> str:
        lines = ["ACTION TYPES"]
        for name in self.list_actions():
            action = self._actions[name]
            lines.append(f"- {action.name}: {action.description}")
            properties = action.schema.get("properties")
            required = action.schema.get("required")
            required_fields = set(required) if isinstance(required, list) else set()
            if isinstance(properties, dict):
                for arg_name, arg_spec in properties.items():
                    if not isinstance(arg_name, str) or not isinstance(arg_spec, dict):
                        continue
                    arg_type = str(arg_spec.get("type") or "any")
                    arg_desc = str(arg_spec.get("description") or "").strip()
                    marker = ", required" if arg_name in required_fields else ""
                    lines.append(f"  - {arg_name} ({arg_type}{marker}): {arg_desc}")
        return "\n".join(lines)


def build_default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register(
        name=domain.MARK_READ,
        label="Mark as read",
        description="Remove the UNREAD label from the email.",
        direct=True,
        schema={"type": "object", "required": [], "properties": {}},
    )
    registry.register(
        name=domain.DELETE,
        label="Delete",
        description="Move the email to the trash.",
        direct=True,
        schema={"type": "object", "required": [], "properties": {}},
    )
    registry.register(
        name=domain.REPLY,
        label="Reply",
        description="Send a reply to the sender of the email.",
        schema={
            "type": "object",
            "required": ["body"],
            "properties": {
                "body": {"type": "string", "description": "Reply body text."},
            },
        },
    )
    registry.register(
        name=domain.DRAFT_REPLY,
        label="Draft reply",
        description="Save a reply to the email as a Gmail draft without sending it.",
        schema={
            "type": "object",
            "required": ["body"],
            "properties": {
                "body": {"type": "string", "description": "Draft body text."},
            },
        },
    )
    registry.register(
        name=domain.FORWARD,
        label="Forward",
        description="Forward the email to another recipient.",
        schema={
            "type": "object",
            "required": ["to"],
            "properties": {
                "to": {"type": "string", "description": "Recipient email address."},
                "note": {"type": "string", "description": "Optional note above the forwarded text."},
            },
        },
    )
    registry.register(
        name=domain.CREATE_TASK,
        label="Create task",
        description="Add a task to the default Google Tasks list.",
        schema={
            "type": "object",
            "required": ["title"],
            "properties": {
                "title": {"type": "string", "description": "Task title."},
                "notes": {"type": "string", "description": "Optional task notes."},
                "due": {"type": "string", "description": "Optional RFC3339 due date."},
            },
        },
    )
    registry.register(
        name=domain.CREATE_MEETING,
        label="Schedule meeting",
        description="Create an event on the primary Google Calendar.",
        schema={
            "type": "object",
            "required": ["start", "end"],
            "properties": {
                "title": {"type": "string", "description": "Event title."},
                "start": {"type": "string", "description": "ISO-8601 start instant."},
                "end": {"type": "string", "description": "ISO-8601 end instant."},
                "description": {"type": "string", "description": "Event description."},
                "location": {"type": "string", "description": "Event location."},
                "attendees": {"type": "array", "description": "Attendee email addresses."},
                "text": {"type": "string", "description": "Free-text scheduling request."},
            },
        },
    )
    return registry
