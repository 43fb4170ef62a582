# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/minilab/utils/templates.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from ..errors import MinilabError

log = logging.getLogger("minilab")

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"


class TemplateError(MinilabError):
    pass


def _env(templates_root: Path) -> Environment:
    return Environment(
        loader=FileSystemLoader(str(templates_root)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_template(name: str, context: Dict[str, Any], templates_root: Optional[Path] = None) -> str:
    env = _env(templates_root or TEMPLATES_DIR)
    try:
        tmpl = env.get_template(name)
    except TemplateNotFound as e:
        raise TemplateError(f"Missing template: {name}") from e
    try:
        return tmpl.render(**context)
    except UndefinedError as e:
        raise TemplateError(f"{name}: {e.message}") from e


def render_to(
    name: str,
    dst: Path,
    context: Dict[str, Any],
    *,
    mode: Optional[int] = None,
    templates_root: Optional[Path] = None,
) -> Path:
    text = render_template(name, context, templates_root)
    dst.parent.mkdir(parents=True, exist_ok=True)
    dst.write_text(text, encoding="utf-8")
    if mode is not None:
        dst.chmod(mode)
    log.debug("rendered %s -> %s", name, dst)
    return dst


def read_asset(name: str) -> str:
    """Static (non-template) file shipped next to the templates."""
    path = TEMPLATES_DIR / name
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise TemplateError(f"Missing asset: {name}") from e
