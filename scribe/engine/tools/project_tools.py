"""Project-local tools loaded from ``<project>/.scribe/tools/*.py``.

Each file is imported as an isolated module. Every module-level Tool
instance becomes a tool: an export named ``default`` takes the file
name, any other export is registered as ``<file>_<export>``. A file that
fails to import is logged and skipped; the remaining tools still load.

Example ``.scribe/tools/lint.py``::

    from scribe.engine.tools import tool

    @tool(description="Run eslint on the project")
    def default(path: str = ".") -> str:
        ...
"""
from __future__ import annotations

import importlib.util
import logging
import sys
from pathlib import Path

from .base import Tool

logger = logging.getLogger(__name__)

PROJECT_TOOLS_DIR = Path(".scribe") / "tools"


def _load_module(path: Path, module_name: str):
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load tool file: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    finally:
        sys.modules.pop(module_name, None)
    return module


def load_project_tools(project_dir: Path | None) -> dict[str, Tool]:
    """Load every project-local tool, keyed by its exposed name."""
    tools: dict[str, Tool] = {}
    if project_dir is None:
        return tools
    tools_dir = project_dir / PROJECT_TOOLS_DIR
    if not tools_dir.is_dir():
        logger.debug("No project tools directory at %s", tools_dir)
        return tools

    files = sorted(p for p in tools_dir.glob("*.py") if not p.name.startswith("_"))
    logger.info("Found %d project tool file(s) in %s", len(files), tools_dir)

    for path in files:
        namespace = path.stem
        module_name = f"scribe_project_tools.{abs(hash(str(path)))}.{namespace}"
        try:
            module = _load_module(path, module_name)
        except Exception:
            logger.warning("Failed to load project tool file %s", path, exc_info=True)
            continue

        count = 0
        for export_name, value in vars(module).items():
            if export_name.startswith("_") or not isinstance(value, Tool):
                continue
            tool_name = namespace if export_name == "default" else f"{namespace}_{export_name}"
            value.name = tool_name
            tools[tool_name] = value
            count += 1
        logger.info("Loaded %d tool(s) from %s", count, path.name)

    return tools
