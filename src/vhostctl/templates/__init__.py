"""Jinja2 template rendering for generated VirtualHost blocks.

Built-in templates ship inside this package (``apache/*.j2``). Operators can
shadow any of them by placing a file with the same relative name under the
configured ``templates_dir``.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
)

PROXY_TEMPLATE = "apache/proxy.conf.j2"
STATIC_TEMPLATE = "apache/static.conf.j2"


class TemplateError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render templates with strict undefined-variable handling."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("vhostctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders Apache config, not HTML
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{template_name}' not found.") from exc
        return template.render(**context)


__all__ = ["PROXY_TEMPLATE", "STATIC_TEMPLATE", "TemplateEngine", "TemplateError"]
