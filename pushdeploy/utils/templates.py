"""
Command template helpers.

Stage commands are ``str.format`` templates whose placeholders name
environment bindings (``{remote_working_dir}``, ``{service_name}``...).
Values are shell-quoted on substitution so a binding can never inject
extra shell syntax.
"""

import shlex
from string import Formatter

BINDING_NAMES = frozenset(
    {
        "remote_user",
        "host",
        "port",
        "remote_working_dir",
        "service_name",
        "target",
        "pipeline",
        "run_id",
        "commit_sha",
        "ref",
        "branch",
        "owner",
        "mode",
    }
)


def template_fields(template: str) -> set[str]:
    """Return the placeholder names used by a command template.

    Raises:
        ValueError: If the template is not a valid format string or uses
            positional or attribute/index placeholders.
    """
    fields: set[str] = set()
    for _, field_name, _, _ in Formatter().parse(template):
        if field_name is None:
            continue
        if not field_name or not field_name.isidentifier():
            raise ValueError(f"Unsupported placeholder '{{{field_name}}}' in '{template}'")
        fields.add(field_name)
    return fields


def unknown_fields(template: str) -> set[str]:
    """Placeholders of ``template`` that are not known binding names."""
    return template_fields(template) - BINDING_NAMES


def render_command(template: str, bindings: dict[str, str]) -> str:
    """Substitute shell-quoted binding values into a command template.

    Args:
        template: Command template with ``{binding}`` placeholders
        bindings: Binding values by name

    Returns:
        The rendered command line

    Raises:
        KeyError: If a placeholder has no binding
    """
    quoted = {name: shlex.quote(str(value)) for name, value in bindings.items()}
    return template.format_map(quoted)
