"""Expansion of packaged build, deploy and container templates."""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template
from typing import Dict, Mapping, Optional, Union

from ..paths import DEVOPS_RESOURCES_DIR

logger = logging.getLogger(__name__)

RESOURCES_DIR = Path(__file__).parent / "resources"


class _PlaceholderTemplate(Template):
    """``${{name}}`` placeholders.

    Single-brace ``${NAME}`` references are pipeline variables resolved by
    the build service at run time and are left untouched.
    """

    pattern = r"""
    \$\{\{(?:
      (?P<braced>[_a-z][_a-z0-9]*)\}\} |
      (?P<escaped>(?!))                |
      (?P<named>(?!))                  |
      (?P<invalid>)
    )
    """


class TemplateExpander:
    """Renders packaged templates and optionally writes them into a folder."""

    def __init__(self, template_dir: Optional[Union[str, Path]] = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else RESOURCES_DIR
        self._cache: Dict[str, str] = {}

    def load(self, name: str) -> str:
        if name not in self._cache:
            path = self.template_dir / name
            if not path.is_file():
                raise FileNotFoundError(f"Unknown template: {name}")
            self._cache[name] = path.read_text(encoding="utf-8")
        return self._cache[name]

    def render(self, name: str, values: Mapping[str, object]) -> str:
        text = _PlaceholderTemplate(self.load(name)).safe_substitute(
            {key: str(value) for key, value in values.items()}
        )
        if "${{" in text:
            logger.warning("Template %s has unresolved placeholders", name)
        return text

    def expand(
        self,
        name: str,
        values: Mapping[str, object],
        folder: Optional[Path] = None,
        target: Optional[str] = None,
    ) -> str:
        """
        Render `name` and, when `folder` is given, write it to
        ``<folder>/.devops/<target or name>``.

        Returns:
            The expanded text
        """
        text = self.render(name, values)
        if folder is not None:
            path = Path(folder) / DEVOPS_RESOURCES_DIR / (target or name)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
            logger.debug("Wrote %s", path)
        return text
