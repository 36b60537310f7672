# =============================================================================
# Pack File Reader
# =============================================================================
# The host hands the engine a file-reading capability scoped to the pack root.
# Paths are always relative to that root; anything escaping it is refused.

from pathlib import Path


class PackFileReader:
    """
    Interface for reading pack files relative to the pack root.

    Hosts that keep the pack somewhere other than a plain directory
    (an app bundle, an archive) subclass this and implement both methods.
    """

    def read_text(self, relative_path):
        raise NotImplementedError

    def read_bytes(self, relative_path):
        raise NotImplementedError


class DirectoryPackReader(PackFileReader):
    """
    Reads pack files from a directory on the local filesystem.

    Every read is recorded in `reads` (relative paths, in order) so callers
    and tests can see exactly which files a load touched.

    Args:
        root: Path to the pack root directory
    """

    def __init__(self, root):
        self.root = Path(root).resolve()
        self.reads = []

    def _resolve(self, relative_path):
        path = (self.root / str(relative_path).lstrip('/')).resolve()
        if path != self.root and self.root not in path.parents:
            raise PermissionError(f"Path escapes pack root: {relative_path}")
        return path

    def read_text(self, relative_path):
        path = self._resolve(relative_path)
        self.reads.append(str(relative_path))
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()

    def read_bytes(self, relative_path):
        path = self._resolve(relative_path)
        self.reads.append(str(relative_path))
        with open(path, 'rb') as f:
            return f.read()

    def exists(self, relative_path):
        return self._resolve(relative_path).exists()

    def absolute(self, relative_path):
        """Absolute filesystem path for a pack-relative path (used to open databases)."""
        return self._resolve(relative_path)
