from pathlib import Path, PurePath


class SecurityError(Exception):
    """Raised when an agent file operation leaves its allowed directories."""
    pass


DEFAULT_MAX_FILE_SIZE = 1_048_576


def is_env_file(name: str) -> bool:
    """.env, .env.local, prod.env and the like."""
    return name == ".env" or name.startswith(".env.") or name.endswith(".env")


class FileGuard:
    """Confines agent file tools to a working directory.

    Reads may also reach into extra read-only roots (the navigator reads the
    code directory this way). Writes are confined to the root, never touch
    .git or .env files, and are refused entirely for read-only sessions.
    """

    def __init__(
        self,
        root: Path,
        read_roots: tuple = (),
        writable: bool = True,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        self.root = Path(root).resolve()
        self.read_roots = tuple(Path(r).resolve() for r in read_roots)
        self.writable = writable
        self.max_file_size = max_file_size

    def validate_read(self, path: str) -> Path:
        """Resolve a read or list target. Returns the absolute path."""
        resolved = self._contain(path, self.root, *self.read_roots)
        if is_env_file(resolved.name):
            raise SecurityError(f"Protected path: {path}")
        return resolved

    def validate_write(self, path: str) -> Path:
        """Resolve a write target. Returns the absolute path."""
        if not self.writable:
            raise SecurityError("This session is read-only")
        resolved = self._contain(path, self.root)
        rel = resolved.relative_to(self.root)
        if rel.parts[:1] == (".git",) or is_env_file(rel.name):
            raise SecurityError(f"Protected path: {rel}")
        return resolved

    def _contain(self, path: str, *roots: Path) -> Path:
        if not path:
            return self.root
        if ".." in PurePath(path).parts:
            raise SecurityError(f"Path traversal not allowed: {path}")

        absolute = path.startswith("/")
        resolved = Path(path).resolve() if absolute else (self.root / path).resolve()
        if any(resolved.is_relative_to(base) for base in roots):
            return resolved

        if absolute:
            raise SecurityError(f"Absolute path outside allowed directories: {path}")
        # Relative paths only get here through a symlink
        raise SecurityError(f"Path escapes working directory: {path}")
