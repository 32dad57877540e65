"""Tool registry, sequential dispatcher, and the built-in file and shell tools."""

import asyncio
import fnmatch
import json
import logging
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from .conversation import ToolResultBlock, ToolUseBlock
from .errors import InputParseError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000


@dataclass(frozen=True)
class Tool:
    """A named capability the model may invoke.

    ``execute`` receives the parsed input object and returns the result text.
    It signals failure by raising; it must never prompt the user.
    """

    name: str
    description: str
    input_schema: dict
    execute: Callable[[dict], Awaitable[str]]

    def to_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry:
    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [t.to_schema() for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


@dataclass(frozen=True)
class ToolOutcome:
    tool_use_id: str
    content: str
    is_error: bool

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(self.tool_use_id, self.content, self.is_error)


def _check_input(tool: Tool, tool_input) -> None:
    if not isinstance(tool_input, dict):
        raise ToolExecutionError(
            f"tool input must be an object, got {type(tool_input).__name__}"
        )
    required = tool.input_schema.get("required", [])
    missing = [key for key in required if key not in tool_input]
    if missing:
        raise ToolExecutionError(f"missing required argument: {', '.join(missing)}")


class ToolDispatcher:
    """Runs tool_use blocks one at a time and turns every failure into data."""

    def __init__(self, registry: ToolRegistry, sink=None):
        self.registry = registry
        self.sink = sink

    async def dispatch(self, block: ToolUseBlock) -> ToolOutcome:
        if self.sink is not None:
            self.sink.tool_started(block.name)
        if logger.isEnabledFor(logging.DEBUG):
            pretty = json.dumps(block.input, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            logger.debug("calling %s (%s) with %s", block.name, block.id, pretty)

        t0 = time.monotonic()
        try:
            tool = self.registry.get(block.name)
            if tool is None:
                raise ToolNotFoundError(f"tool not found: {block.name}")
            if block.input_error:
                raise InputParseError(block.input_error)
            _check_input(tool, block.input)
            result = await tool.execute(block.input)
            if not isinstance(result, str):
                result = str(result)
            outcome = ToolOutcome(block.id, result, False)
        except Exception as e:
            message = str(e) or type(e).__name__
            outcome = ToolOutcome(block.id, message, True)
        elapsed = time.monotonic() - t0

        if outcome.is_error:
            logger.debug("%s failed after %.1fs: %s", block.name, elapsed, outcome.content)
        else:
            logger.debug(
                "%s finished in %.1fs (%d chars)", block.name, elapsed, len(outcome.content)
            )
        if self.sink is not None:
            self.sink.tool_finished(block.name, not outcome.is_error)
        return outcome

    async def dispatch_all(self, blocks: list[ToolUseBlock]) -> list[ToolOutcome]:
        """Dispatch in stream order; block k+1 starts only after block k is done."""
        outcomes = []
        for block in blocks:
            outcomes.append(await self.dispatch(block))
        return outcomes


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 200
MAX_GREP_MATCHES = 100
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path (following symlinks) and require it to stay inside base_dir."""
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolExecutionError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _relative(path: Path, base_dir: str) -> str:
    try:
        return str(path.relative_to(Path(base_dir).resolve()))
    except ValueError:
        return str(path)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _cap_lines(lines: list[str], note: str) -> str:
    """Join lines, stopping before MAX_OUTPUT_BYTES and appending note if cut."""
    out: list[str] = []
    total = 0
    for line in lines:
        size = len(line.encode("utf-8")) + 1
        if total + size > MAX_OUTPUT_BYTES:
            out.append(note)
            break
        out.append(line)
        total += size
    return "\n".join(out)


def _list_files(args: dict, base_dir: str) -> str:
    path = args.get("path", ".")
    pattern = args.get("pattern") or "**/*"
    root = safe_resolve(path, base_dir)
    if not root.exists():
        raise ToolExecutionError(f"path does not exist: {path}")
    if not root.is_dir():
        raise ToolExecutionError(f"path is not a directory: {path}")

    base = Path(base_dir).resolve()
    matched = []
    for candidate in root.glob(pattern):
        if ".git" in candidate.relative_to(root).parts:
            continue
        if not candidate.resolve().is_relative_to(base):
            continue
        matched.append(candidate)
    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda p: str(p))
    truncated = len(matched) > MAX_LIST_RESULTS
    lines = [
        _relative(p, base_dir) + ("/" if p.is_dir() else "")
        for p in matched[:MAX_LIST_RESULTS]
    ]
    result = _cap_lines(lines, "[truncated at 50KB]")
    if truncated:
        result += f"\n(Showing first {MAX_LIST_RESULTS} entries. Use a narrower pattern.)"
    return result


def _read_file(args: dict, base_dir: str) -> str:
    file_path = args["file_path"]
    offset = args.get("offset", 1)
    limit = args.get("limit", 2000)
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.exists():
        raise ToolExecutionError(f"path does not exist: {file_path}")
    if resolved.is_dir():
        names = [c.name + ("/" if c.is_dir() else "") for c in sorted(resolved.iterdir())]
        return _cap_lines(names, "[truncated at 50KB]")
    if _is_binary(resolved):
        raise ToolExecutionError(f"binary file detected: {file_path}")
    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ToolExecutionError(f"failed to decode {file_path} as UTF-8: {e}")

    lines = text.splitlines()
    start = max(int(offset) - 1, 0)
    selected = lines[start : start + int(limit)]
    numbered = [
        f"{i}: {line[:MAX_LINE_LENGTH]}" for i, line in enumerate(selected, start=start + 1)
    ]
    result = _cap_lines(numbered, "[truncated at 50KB]")
    remaining = len(lines) - (start + len(selected))
    if remaining > 0:
        result += (
            f"\n[{remaining} more lines, use offset={start + len(selected) + 1} to continue]"
        )
    return result


def _grep(args: dict, base_dir: str) -> str:
    pattern = args["pattern"]
    path = args.get("path", ".")
    include = args.get("include")
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ToolExecutionError(f"invalid regex {pattern!r}: {e}")
    root = safe_resolve(path, base_dir)
    if not root.is_dir():
        raise ToolExecutionError(f"path is not a directory: {path}")

    base = Path(base_dir).resolve()
    matches: list[tuple[Path, int, str]] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d != ".git")
        for filename in sorted(files):
            if include and not fnmatch.fnmatch(filename, include):
                continue
            filepath = Path(dirpath) / filename
            try:
                if not filepath.resolve().is_relative_to(base) or _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line))

    if not matches:
        return "No matches found."
    total = len(matches)
    lines = [f"Found {total} matches"]
    current = None
    for filepath, line_no, line in matches[:MAX_GREP_MATCHES]:
        if filepath != current:
            current = filepath
            lines.append(f"\n{_relative(filepath, base_dir)}:")
        lines.append(f"  Line {line_no}: {line[:MAX_LINE_LENGTH]}")
    result = _cap_lines(lines, "[truncated at 50KB]")
    if total > MAX_GREP_MATCHES:
        result += f"\n(Showing first {MAX_GREP_MATCHES} matches. Use a narrower pattern.)"
    return result


def _edit_file(args: dict, base_dir: str) -> str:
    from .edit import replace

    file_path = args["file_path"]
    old_string = args["old_string"]
    new_string = args["new_string"]
    resolved = safe_resolve(file_path, base_dir)

    if not resolved.exists():
        if old_string:
            raise ToolExecutionError(f"file does not exist: {file_path}")
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(new_string, encoding="utf-8")
        return f"Created {file_path}"
    if resolved.is_dir():
        raise ToolExecutionError(f"path is a directory: {file_path}")

    content = resolved.read_text(encoding="utf-8")
    try:
        updated = replace(
            content, old_string, new_string, replace_all=bool(args.get("replace_all"))
        )
    except ValueError as e:
        raise ToolExecutionError(f"{e} in {file_path}")
    resolved.write_text(updated, encoding="utf-8")
    return f"Edited {file_path}"


def _bash(args: dict, base_dir: str) -> str:
    command = args["command"]
    if not isinstance(command, str) or not command.strip():
        raise ToolExecutionError("command must be a non-empty string")
    timeout = max(1, min(int(args.get("timeout", DEFAULT_TIMEOUT)), MAX_TIMEOUT))
    if sys.platform == "win32":
        argv = ["cmd.exe", "/c", command]
    else:
        argv = ["/bin/sh", "-c", command]
    try:
        proc = subprocess.run(
            argv,
            cwd=base_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise ToolExecutionError(f"command timed out after {timeout}s")
    except OSError as e:
        raise ToolExecutionError(f"failed to start command: {e}")

    output = proc.stdout.decode("utf-8", errors="replace")
    if len(output.encode("utf-8")) > MAX_OUTPUT_BYTES:
        output = output.encode("utf-8")[:MAX_OUTPUT_BYTES].decode(
            "utf-8", errors="replace"
        )
        output += "\n[output truncated at 50KB]"
    parts = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    return "\n".join(parts) if parts else "(no output)"


def _threaded(func, base_dir: str):
    async def execute(args: dict) -> str:
        return await asyncio.to_thread(func, args, base_dir)

    return execute


def builtin_tools(base_dir: str = ".", allow_bash: bool = True) -> list[Tool]:
    """Build the default tool set rooted at base_dir."""
    tools = [
        Tool(
            name="list_files",
            description=(
                "List files and directories under a path, matching an optional glob "
                'pattern (default "**/*", recursive). Directories end with /.'
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": 'Directory relative to the working directory. Defaults to ".".',
                    },
                    "pattern": {
                        "type": "string",
                        "description": 'Glob pattern, e.g. "**/*.py". Defaults to "**/*".',
                    },
                },
                "required": [],
            },
            execute=_threaded(_list_files, base_dir),
        ),
        Tool(
            name="read_file",
            description=(
                "Read a text file, returning lines prefixed with line numbers. "
                "Use offset/limit to page through large files. "
                "For a directory, returns its entries."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to read."},
                    "offset": {
                        "type": "integer",
                        "description": "1-based line to start from. Defaults to 1.",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of lines. Defaults to 2000.",
                    },
                },
                "required": ["file_path"],
            },
            execute=_threaded(_read_file, base_dir),
        ),
        Tool(
            name="grep",
            description=(
                "Search file contents for a Python regular expression. "
                "Returns matches grouped by file with line numbers."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Regex to search for."},
                    "path": {
                        "type": "string",
                        "description": 'Directory to search. Defaults to ".".',
                    },
                    "include": {
                        "type": "string",
                        "description": 'Filename glob filter, e.g. "*.py".',
                    },
                },
                "required": ["pattern"],
            },
            execute=_threaded(_grep, base_dir),
        ),
        Tool(
            name="edit_file",
            description=(
                "Replace old_string with new_string in a file. old_string must match "
                "exactly once unless replace_all is set. To create a new file, pass an "
                "empty old_string and the full content as new_string."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to edit."},
                    "old_string": {
                        "type": "string",
                        "description": "Text to find. Empty to create a new file.",
                    },
                    "new_string": {"type": "string", "description": "Replacement text."},
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace every occurrence.",
                    },
                },
                "required": ["file_path", "old_string", "new_string"],
            },
            execute=_threaded(_edit_file, base_dir),
        ),
    ]
    if allow_bash:
        tools.append(
            Tool(
                name="bash",
                description=(
                    "Run a shell command in the working directory and return its "
                    "combined stdout and stderr. Non-interactive only."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "command": {"type": "string", "description": "Shell command."},
                        "timeout": {
                            "type": "integer",
                            "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {DEFAULT_TIMEOUT}.",
                        },
                    },
                    "required": ["command"],
                },
                execute=_threaded(_bash, base_dir),
            )
        )
    return tools
