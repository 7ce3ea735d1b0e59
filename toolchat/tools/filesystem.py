"""File system tools: list, read, write.

File views are stateful resources keyed by resolved path, so reading or
writing a file supersedes every older view of it in context. Directory
listings are ephemeral.
"""

from datetime import datetime
from pathlib import Path
from typing import Any

from toolchat.tools.base import ContextBehavior, Tool


def _check_symlink_chain(path: Path, allowed_dir: Path) -> None:
    """Walk each component of *path* and verify every symlink resolves inside *allowed_dir*."""
    allowed = allowed_dir.resolve()
    current = Path(path.anchor) if path.anchor else Path(".")
    for part in path.parts[1:] if path.anchor else path.parts:
        current = current / part
        if current.is_symlink():
            target = current.resolve()
            try:
                target.relative_to(allowed)
            except ValueError:
                raise PermissionError(
                    f"Symlink {current} points to {target} which is outside allowed directory {allowed_dir}"
                )


def _resolve_path(path: str, workspace: Path | None = None, allowed_dir: Path | None = None) -> Path:
    """Resolve path against workspace (if relative) and enforce directory restriction."""
    p = Path(path).expanduser()
    if not p.is_absolute() and workspace:
        p = workspace / p
    resolved = p.resolve()
    if allowed_dir:
        try:
            resolved.relative_to(allowed_dir.resolve())
        except ValueError:
            raise PermissionError(f"Path {path} is outside allowed directory {allowed_dir}")
        _check_symlink_chain(p, allowed_dir)
    return resolved


def _file_view(path: Path, content: str) -> dict[str, Any]:
    stat = path.stat()
    return {
        "path": str(path),
        "content": content,
        "size": stat.st_size,
        "last_modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
    }


class _FileTool(Tool):
    def __init__(self, workspace: Path | None = None, allowed_dir: Path | None = None):
        self._workspace = workspace
        self._allowed_dir = allowed_dir

    def _resolve(self, path: str) -> Path:
        return _resolve_path(path, self._workspace, self._allowed_dir)

    def _unresolved(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute() and self._workspace:
            p = self._workspace / p
        return p


class ListDirTool(_FileTool):
    behavior = ContextBehavior.EPHEMERAL

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List the entries of a directory. Directories end with '/'."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory to list (default: workspace root)"},
            },
        }

    async def execute(self, path: str = ".", **kwargs: Any) -> list[str]:
        dir_path = self._resolve(path)
        if not dir_path.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        return sorted(p.name + ("/" if p.is_dir() else "") for p in dir_path.iterdir())


class ReadFileTool(_FileTool):
    behavior = ContextBehavior.STATEFUL_REPLACE

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read a text file. Re-reading a file replaces the older copy in the conversation."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to read"},
            },
            "required": ["path"],
        }

    def resource_id_of(self, output: Any) -> str | None:
        return output.get("path") if isinstance(output, dict) else None

    async def execute(self, path: str, **kwargs: Any) -> dict[str, Any]:
        file_path = self._resolve(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return _file_view(file_path, file_path.read_text(encoding="utf-8"))


class WriteFileTool(_FileTool):
    behavior = ContextBehavior.STATEFUL_REPLACE

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write text to a file, creating parent directories. Returns the new file view."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write"},
                "content": {"type": "string", "description": "Full new file content"},
            },
            "required": ["path", "content"],
        }

    def resource_id_of(self, output: Any) -> str | None:
        return output.get("path") if isinstance(output, dict) else None

    async def execute(self, path: str, content: str, **kwargs: Any) -> dict[str, Any]:
        requested = self._unresolved(path)
        if requested.is_symlink():
            raise PermissionError(f"Refusing to write through symlink: {requested}")
        file_path = self._resolve(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return _file_view(file_path, content)
