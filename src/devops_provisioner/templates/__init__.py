"""Build, deploy and container templates."""

from .expander import TemplateExpander

__all__ = ["TemplateExpander"]
