"""Default ``{{variable}}`` template renderer and reminder variables."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from remindflow.core.exceptions import TemplateNotFoundError
from remindflow.models.notification import Channel, RenderedMessage
from remindflow.models.work_item import WorkItem

RECOGNIZED_VARIABLES = (
    "username",
    "itemName",
    "itemUrl",
    "dueDate",
    "currentDate",
    "daysSinceLastActivity",
)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

DEFAULT_TEMPLATES: dict[str, RenderedMessage] = {
    "reminder.comment": RenderedMessage(
        body="{{username}} please provide an update on this card.",
    ),
    "reminder.email": RenderedMessage(
        subject="Reminder: update needed on {{itemName}}",
        body=(
            "Hi {{username}},\n\n"
            "There has been no update on \"{{itemName}}\" for {{daysSinceLastActivity}} day(s).\n"
            "Due date: {{dueDate}}\n"
            "Please post an update: {{itemUrl}}\n\n"
            "Sent on {{currentDate}}"
        ),
    ),
    "reminder.sms": RenderedMessage(
        body="Hi {{username}}, please update \"{{itemName}}\": {{itemUrl}}",
    ),
    "reminder.whatsapp": RenderedMessage(
        body="Hi {{username}}, \"{{itemName}}\" still needs your update (due {{dueDate}}). {{itemUrl}}",
    ),
}


def template_id_for(channel: Channel) -> str:
    return f"reminder.{channel.value}"


def build_variables(item: WorkItem, username: str, now: datetime) -> dict[str, Any]:
    """Reminder variables for one recipient of ``item``."""
    return {
        "username": username,
        "itemName": item.name,
        "itemUrl": item.url,
        "dueDate": item.due_date.date().isoformat() if item.due_date else "not set",
        "currentDate": now.date().isoformat(),
        "daysSinceLastActivity": item.days_since_last_activity(now),
    }


def _substitute(text: str, variables: dict[str, Any]) -> str:
    # Unknown placeholders are left untouched
    return _PLACEHOLDER.sub(
        lambda m: str(variables[m.group(1)]) if m.group(1) in variables else m.group(0),
        text,
    )


class StringTemplateRenderer:
    """ITemplateRenderer over an in-memory template table."""

    def __init__(self, templates: dict[str, RenderedMessage] | None = None) -> None:
        self._templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self._templates.update(templates)

    def register(self, template_id: str, template: RenderedMessage) -> None:
        self._templates[template_id] = template

    def render(self, template_id: str, variables: dict[str, Any]) -> RenderedMessage:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"No template registered as {template_id!r}")
        return RenderedMessage(
            subject=_substitute(template.subject, variables) if template.subject else None,
            body=_substitute(template.body, variables),
        )
