"""Jinja2 template repository for guest configuration files."""

from __future__ import annotations

from typing import Any, Mapping

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from pi_image_builder.storage.exceptions import TemplateRenderError


class TemplateRepository:
    """Render packaged templates to bytes.

    Missing template variables are errors, never empty strings.
    """

    def __init__(self, package: str = "pi_image_builder", directory: str = "templates"):
        self.env = Environment(
            loader=PackageLoader(package, directory),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def list_templates(self) -> list[str]:
        return self.env.list_templates()

    def render(self, name: str, data: Mapping[str, Any] | None = None) -> bytes:
        """Render template ``name`` with ``data``.

        Raises:
            TemplateRenderError: If the template is missing or fails to render
        """
        try:
            template = self.env.get_template(name)
            return template.render(**dict(data or {})).encode("utf-8")
        except TemplateError as e:
            raise TemplateRenderError(name, str(e)) from e
