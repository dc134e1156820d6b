"""
Archive name templates.

Templates contain placeholders such as `{date:year}`; they are rendered once
per archive run against a single captured timestamp so every placeholder in
a name, and every destination, sees the same instant.
"""

import re
from dataclasses import dataclass
from datetime import datetime

from archivist.models import ConfigurationError


WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')

PLACEHOLDERS = {
    'date:year': lambda ts: f"{ts.year:04d}",
    'date:month': lambda ts: f"{ts.month:02d}",
    'date:day': lambda ts: f"{ts.day:02d}",
    'date:hour': lambda ts: f"{ts.hour:02d}",
    'date:minute': lambda ts: f"{ts.minute:02d}",
    'date:second': lambda ts: f"{ts.second:02d}",
    'date:weekday': lambda ts: WEEKDAYS[ts.weekday()],
}

PLACEHOLDER_PATTERN = re.compile(r'\{([^{}]*)\}')
FORBIDDEN_CHARACTERS = ('/', '\\', '\x00')


class TemplateError(ConfigurationError):
    """Raised when a name template is invalid or renders to an unsafe name."""
    pass


@dataclass(frozen=True)
class TemplateContext:
    timestamp: datetime
    archive: str = ''


def render(template: str, context: TemplateContext) -> str:
    """
    Render a name template.

    Args:
        template: Template such as 'db-{date:year}-{date:month}'
        context: Captured run timestamp

    Returns:
        Rendered, filesystem-safe name

    Raises:
        TemplateError: On unknown placeholders, stray braces or an unsafe result
    """
    def substitute(match):
        key = match.group(1)
        if key not in PLACEHOLDERS:
            raise TemplateError(f"Unknown placeholder '{{{key}}}' in archive name '{template}'")
        return PLACEHOLDERS[key](context.timestamp)

    rendered = PLACEHOLDER_PATTERN.sub(substitute, template)

    if '{' in rendered or '}' in rendered:
        raise TemplateError(f"Unbalanced braces in archive name '{template}'")
    if not rendered.strip() or rendered in ('.', '..'):
        raise TemplateError(f"Archive name '{template}' renders to an empty name")
    if any(c in rendered for c in FORBIDDEN_CHARACTERS):
        raise TemplateError(f"Archive name '{template}' contains a path separator")
    if any(ord(c) < 32 for c in rendered):
        raise TemplateError(f"Archive name '{template}' contains control characters")

    return rendered


def validate_template(template: str):
    """Check a template renders, using a fixed timestamp."""
    render(template, TemplateContext(timestamp=datetime(2000, 1, 1)))
