"""
Club Membership -- Message Templates

Renders the ActionSpecs table's subject/body templates into outbound
Messages with Jinja2.  Templates see the member's fields by name:

    {{ first }} {{ last }} {{ email }} {{ phone }}
    {{ joined | format_date }} {{ expires | format_date }}
    {{ renewed_on | format_date }} {{ period }} {{ full_name }}

Usage:
    renderer = MessageRenderer(specs, reply_to="membership@sc3.club")
    message = renderer.render(ActionType.RENEW, member)
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from jinja2 import BaseLoader, Environment

from .models import ActionSpec, ActionType, Member, Message

_DATE_FORMAT = "%b %d, %Y"


def format_date(d: date | datetime | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Feb 05, 2026').

    Returns empty string for None or anything that is not a date.
    """
    if not isinstance(d, (date, datetime)):
        return ""
    return d.strftime(_DATE_FORMAT)


def build_environment(autoescape: bool = False) -> Environment:
    """A string-template Jinja2 environment with the shared filters."""
    env = Environment(
        loader=BaseLoader(),
        autoescape=autoescape,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["format_date"] = format_date
    return env


def member_context(member: Member) -> dict[str, Any]:
    return {
        "email": member.email,
        "first": member.first,
        "last": member.last,
        "full_name": member.full_name,
        "phone": member.phone,
        "joined": member.joined,
        "period": member.period,
        "expires": member.expires,
        "renewed_on": member.renewed_on,
        "status": member.status.value,
        "member": member,
    }


class MessageRenderer:
    """Turns (action, member) into a ready-to-send Message."""

    def __init__(self, specs: dict[ActionType, ActionSpec], reply_to: str = "") -> None:
        self.specs = specs
        self.reply_to = reply_to
        self.env = build_environment()

    def spec_for(self, action: ActionType) -> ActionSpec:
        spec = self.specs.get(action)
        if spec is None:
            raise KeyError(f"No action spec for {action.value}")
        return spec

    def render_string(self, template: str, **context: Any) -> str:
        return self.env.from_string(template).render(**context)

    def render(self, action: ActionType, member: Member) -> Message:
        """Render the *action* spec for *member*.

        Raises:
            KeyError: If the ActionSpecs table has no row for *action*.
            jinja2.TemplateError: If the stored template is broken.
        """
        spec = self.spec_for(action)
        context = member_context(member)
        return Message(
            to=member.email,
            subject=self.render_string(spec.subject, **context).strip(),
            html_body=self.render_string(spec.body, **context),
            reply_to=self.reply_to,
        )
