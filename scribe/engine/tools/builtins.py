"""Built-in project tools: file access, shell execution, npm packages.

Every path is resolved against the session's project directory and
rejected if it escapes it. Mutating tools report each touched file
through ToolContext.notify_file_changed.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiohttp

from scribe.engine.errors import ToolExecutionError

from .base import Tool, ToolContext

logger = logging.getLogger(__name__)

MAX_READ_LINES = 2000
MAX_OUTPUT_CHARS = 30_000


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


class _ProjectTool(Tool):
    """Base for tools confined to a project directory."""

    def __init__(self, context: ToolContext) -> None:
        self._ctx = context

    def resolve(self, raw_path: str) -> Path:
        root = self._ctx.project_dir.resolve()
        path = Path(raw_path)
        if not path.is_absolute():
            path = root / path
        path = path.resolve()
        if path != root and root not in path.parents:
            raise ToolExecutionError(
                self.name, f"path {raw_path!r} is outside the project directory",
            )
        return path


class ReadFileTool(_ProjectTool):
    name = "read_file"
    description = (
        "Read a text file from the project. Returns numbered lines. "
        "Use offset/limit to page through large files."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the project root"},
            "offset": {"type": "integer", "minimum": 1, "description": "First line to read (1-based)"},
            "limit": {"type": "integer", "minimum": 1, "description": "Maximum number of lines"},
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        path = self.resolve(args["path"])
        if not path.is_file():
            raise ToolExecutionError(self.name, f"file not found: {args['path']}")
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        offset = args.get("offset", 1)
        limit = args.get("limit", MAX_READ_LINES)
        selected = lines[offset - 1: offset - 1 + limit]
        if not selected:
            return f"(no lines in range; file has {len(lines)} lines)"
        width = len(str(offset + len(selected) - 1))
        body = "\n".join(
            f"{n:>{width}}\t{line}"
            for n, line in enumerate(selected, start=offset)
        )
        remaining = len(lines) - (offset - 1 + len(selected))
        if remaining > 0:
            body += f"\n... ({remaining} more lines)"
        return body


class WriteFileTool(_ProjectTool):
    name = "write_file"
    description = (
        "Write a file in the project, creating parent directories. "
        "Overwrites existing files. Use npm_add_package/npm_remove_package "
        "instead of writing package.json."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        path = self.resolve(args["path"])
        if path.name == "package.json":
            raise ToolExecutionError(
                self.name,
                "direct writes to package.json are disallowed; use "
                "npm_add_package or npm_remove_package instead",
            )
        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args["content"], encoding="utf-8")
        self._ctx.notify_file_changed(path, "modify" if existed else "create", self.name)
        if existed:
            return f"File successfully written to {args['path']}"
        return f"File successfully created at {args['path']}"


class StrReplaceTool(_ProjectTool):
    name = "str_replace"
    description = (
        "Replace the first occurrence of old_str with new_str in a project "
        "file. old_str must match the file contents exactly."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "old_str": {"type": "string", "minLength": 1},
            "new_str": {"type": "string"},
        },
        "required": ["path", "old_str", "new_str"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        path = self.resolve(args["path"])
        if not path.is_file():
            raise ToolExecutionError(self.name, f"file not found: {args['path']}")
        content = path.read_text(encoding="utf-8")
        old, new = args["old_str"], args["new_str"]
        occurrences = content.count(old)
        if occurrences == 0:
            raise ToolExecutionError(
                self.name, f"the string to replace was not found in {args['path']}",
            )
        path.write_text(content.replace(old, new, 1), encoding="utf-8")
        self._ctx.notify_file_changed(path, "modify", self.name)
        message = f"Successfully replaced text in {args['path']}"
        if occurrences > 1:
            message += f" ({occurrences} occurrences found, only first occurrence replaced)"
        return message


class ListFilesTool(_ProjectTool):
    name = "list_files"
    description = "List project files matching a glob pattern (default: all files)."
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern, e.g. 'src/**/*.ts'"},
        },
        "additionalProperties": False,
    }

    _SKIP_DIRS = {".git", "node_modules", ".ai"}

    async def execute(self, args: dict[str, Any]) -> str:
        root = self._ctx.project_dir.resolve()
        pattern = args.get("pattern") or "**/*"
        matches = []
        for path in root.glob(pattern):
            rel = path.relative_to(root)
            if not path.is_file() or self._SKIP_DIRS.intersection(rel.parts):
                continue
            matches.append(rel.as_posix())
        if not matches:
            return f"No files match {pattern!r}"
        matches.sort()
        return _truncate("\n".join(matches))


class ShellExecTool(_ProjectTool):
    name = "shell_exec"
    description = (
        "Run a shell command in the project directory. Returns combined "
        "stdout and stderr. Non-zero exit codes are reported as errors."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "minLength": 1},
        },
        "required": ["command"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        command = args["command"]
        logger.debug("shell_exec in %s: %s", self._ctx.project_dir, command)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self._ctx.project_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        timeout = self._ctx.shell_timeout_seconds
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=timeout if timeout > 0 else None,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolExecutionError(
                self.name, f"command timed out after {timeout}s: {command}",
            )
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        output = _truncate(stdout.decode("utf-8", errors="replace"))
        if proc.returncode != 0:
            raise ToolExecutionError(
                self.name, f"exit code {proc.returncode}\n{output}".rstrip(),
            )
        return output or "(no output)"


class _PackageJsonTool(_ProjectTool):
    def _load(self) -> tuple[Path, dict[str, Any]]:
        path = self.resolve("package.json")
        if not path.is_file():
            raise ToolExecutionError(self.name, "package.json not found in project root")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(self.name, f"package.json is not valid JSON: {exc}") from exc
        return path, data

    def _save(self, path: Path, data: dict[str, Any]) -> None:
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        self._ctx.notify_file_changed(path, "modify", self.name)


class NpmAddPackageTool(_PackageJsonTool):
    name = "npm_add_package"
    description = (
        "Add an npm dependency to package.json. Without a version the "
        "latest published version is used."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "version": {"type": "string"},
            "dev": {"type": "boolean", "description": "Add to devDependencies"},
        },
        "required": ["name"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        name = args["name"]
        path, data = self._load()
        version = args.get("version") or f"^{await self.latest_version(name)}"
        section = "devDependencies" if args.get("dev") else "dependencies"
        deps = data.setdefault(section, {})
        previous = deps.get(name)
        deps[name] = version
        data[section] = dict(sorted(deps.items()))
        self._save(path, data)
        if previous:
            return f"Updated {name} from {previous} to {version} in {section}"
        return f"Added {name}@{version} to {section}"

    async def latest_version(self, name: str) -> str:
        url = f"{self._ctx.npm_registry_url.rstrip('/')}/{name}/latest"
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
            ) as session:
                async with session.get(url) as resp:
                    if resp.status == 404:
                        raise ToolExecutionError(self.name, f"package {name!r} not found in registry")
                    if resp.status >= 400:
                        raise ToolExecutionError(
                            self.name, f"registry returned HTTP {resp.status} for {name!r}",
                        )
                    payload = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise ToolExecutionError(self.name, f"registry lookup failed: {exc}") from exc
        version = payload.get("version") if isinstance(payload, dict) else None
        if not version:
            raise ToolExecutionError(self.name, f"registry response for {name!r} has no version")
        return version


class NpmRemovePackageTool(_PackageJsonTool):
    name = "npm_remove_package"
    description = "Remove an npm dependency from package.json."
    input_schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
        },
        "required": ["name"],
        "additionalProperties": False,
    }

    async def execute(self, args: dict[str, Any]) -> str:
        name = args["name"]
        path, data = self._load()
        removed_from = [
            section
            for section in ("dependencies", "devDependencies")
            if name in data.get(section, {})
        ]
        if not removed_from:
            raise ToolExecutionError(self.name, f"package {name!r} is not a dependency")
        for section in removed_from:
            del data[section][name]
        self._save(path, data)
        return f"Removed {name} from {', '.join(removed_from)}"


BUILTIN_TOOL_TYPES: tuple[type[_ProjectTool], ...] = (
    ReadFileTool,
    WriteFileTool,
    StrReplaceTool,
    ListFilesTool,
    ShellExecTool,
    NpmAddPackageTool,
    NpmRemovePackageTool,
)


def build_builtin_tools(context: ToolContext) -> dict[str, Tool]:
    """Instantiate every built-in tool for one project context."""
    return {cls.name: cls(context) for cls in BUILTIN_TOOL_TYPES}
