# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/utils/templates.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

log = logging.getLogger("nodefleet")

TASK_MARKER = "#name:"
TASK_PREAMBLE = "#!/usr/bin/env bash\nset -euo pipefail\n"


class TemplateError(RuntimeError):
    pass


@dataclass(frozen=True)
class ScriptTask:
    title: str
    body: str


class TemplateRenderer:
    def __init__(self, templates_dir: Path):
        self.templates_dir = Path(templates_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        try:
            tmpl = self.env.get_template(template_name)
        except TemplateNotFound as e:
            raise TemplateError(f"Missing template: {template_name} in {self.templates_dir}") from e
        return tmpl.render(**context)


def split_script(script: str) -> List[ScriptTask]:
    """
    Split a rendered script into tasks at '#name:<title>' lines.

    Every task gets its own strict-mode preamble. Text before the first
    marker is dropped, as are tasks with an empty body.
    """
    tasks: List[ScriptTask] = []
    title = None
    lines: List[str] = []

    def _flush() -> None:
        if title is not None and any(l.strip() for l in lines):
            tasks.append(ScriptTask(title=title, body=TASK_PREAMBLE + "".join(lines)))

    for line in script.splitlines(keepends=True):
        if line.startswith(TASK_MARKER):
            _flush()
            title = line[len(TASK_MARKER):].strip()
            lines = []
        else:
            lines.append(line)
    _flush()
    return tasks
