"""
VariableStore - durable key/value state shared between phases.

The store is a text file with one assignment per line, the same file the
provisioning scripts used to ``source`` (deployment-info.txt):

    # Instances
    export MASTER_PUBLIC_IP="3.91.10.20"
    REGION=us-east-1

Comments and blank lines are kept. Patching a key rewrites only its line;
new keys are appended. Lines written with ``export`` keep it, and appended
lines follow whatever style the file already uses.

Only the Orchestrator writes to the store. Phases get a StoreView.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from kubestage.errors import NotBootstrapped, StoreCorrupted

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^(?P<export>export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")

HEADER = "# kubestage state - written by kubestage, safe to `source` from bash\n"


@dataclass
class _Line:
    text: str
    key: Optional[str] = None
    exported: bool = False
    value: Optional[str] = None


def _unquote(raw: str) -> Optional[str]:
    """Parse the value part of an assignment. Returns None if malformed."""
    raw = raw.strip()
    if not raw:
        return ""

    if raw[0] == '"':
        out = []
        i = 1
        while i < len(raw):
            ch = raw[i]
            if ch == "\\" and i + 1 < len(raw) and raw[i + 1] in '\\"$`':
                out.append(raw[i + 1])
                i += 2
                continue
            if ch == '"':
                rest = raw[i + 1:].strip()
                if rest and not rest.startswith("#"):
                    return None
                return "".join(out)
            out.append(ch)
            i += 1
        return None

    if raw[0] == "'":
        end = raw.find("'", 1)
        if end == -1:
            return None
        rest = raw[end + 1:].strip()
        if rest and not rest.startswith("#"):
            return None
        return raw[1:end]

    # Unquoted: value ends at an inline comment
    value = re.split(r"\s+#", raw, maxsplit=1)[0].strip()
    if any(c.isspace() for c in value):
        return None
    return value


def quote(value: str) -> str:
    """Double-quote a value so bash reads it back unchanged."""
    escaped = re.sub(r'([\\"$`])', r"\\\1", value)
    return f'"{escaped}"'


class StoreView:
    """Read-only view over a VariableStore handed to phases."""

    def __init__(self, store: "VariableStore"):
        self._store = store

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._store.get(key)
        return default if value is None else value

    def __contains__(self, key: str) -> bool:
        return self._store.get(key) is not None

    def snapshot(self) -> dict[str, str]:
        return self._store.snapshot()

    @property
    def path(self) -> Path:
        return self._store.path


class VariableStore:
    """
    Durable, ordered key/value store backed by a KEY=VALUE file.

    Usage:
        store = VariableStore.load(Path("deployment-info.txt"))
        store.set("MASTER_PUBLIC_IP", "3.91.10.20")
        store.persist()
    """

    def __init__(self, path: Path, lines: Optional[list[_Line]] = None):
        self.path = Path(path)
        self._lines: list[_Line] = lines or []
        self._index: dict[str, int] = {}
        self._reindex()
        self._dirty = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path) -> "VariableStore":
        """
        Load a store from disk.

        Raises:
            NotBootstrapped: If the file does not exist
            StoreCorrupted: If a line is not a comment, blank, or assignment
        """
        path = Path(path)
        if not path.exists():
            raise NotBootstrapped(path)
        return cls(path, cls._parse(path, path.read_text()))

    @classmethod
    def open(cls, path: Path, create: bool = False) -> "VariableStore":
        """Load the store, or start an empty one when ``create`` is set."""
        path = Path(path)
        if path.exists() or not create:
            return cls.load(path)
        logger.info(f"Creating state file {path}")
        store = cls(path, [_Line(HEADER.rstrip("\n"))])
        store._dirty = True
        return store

    @staticmethod
    def _parse(path: Path, text: str) -> list[_Line]:
        lines = []
        for line_no, raw in enumerate(text.splitlines(), start=1):
            stripped = raw.strip()
            if not stripped or stripped.startswith("#"):
                lines.append(_Line(raw))
                continue
            match = KEY_PATTERN.match(stripped)
            if not match:
                raise StoreCorrupted(path, line_no, raw)
            value = _unquote(match.group("value"))
            if value is None:
                raise StoreCorrupted(path, line_no, raw)
            lines.append(_Line(raw, match.group("key"), bool(match.group("export")), value))
        return lines

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Return the value for ``key``, or None if it was never written."""
        index = self._index.get(key)
        if index is None:
            return None
        return self._lines[index].value

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._index)

    def snapshot(self) -> dict[str, str]:
        """Return all entries in file order."""
        return {line.key: line.value for line in self._lines if line.key is not None}

    def view(self) -> StoreView:
        return StoreView(self)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set(self, key: str, value: str) -> bool:
        """
        Write ``key``. Returns True if the stored value changed.

        Writing the current value again is a no-op.
        """
        if not KEY_PATTERN.match(f"{key}="):
            raise ValueError(f"Invalid key: {key!r}")
        value = "" if value is None else str(value)
        if "\n" in value:
            raise ValueError(f"Value for {key} must be a single line")

        index = self._index.get(key)
        if index is not None:
            line = self._lines[index]
            if line.value == value:
                return False
            exported = line.exported
        else:
            exported = self._prefers_export()

        prefix = "export " if exported else ""
        new_line = _Line(f"{prefix}{key}={quote(value)}", key, exported, value)

        if index is not None:
            self._lines[index] = new_line
            self._drop_earlier(key, index)
        else:
            self._index[key] = len(self._lines)
            self._lines.append(new_line)
        self._dirty = True
        return True

    def delete(self, key: str) -> bool:
        """Remove ``key``. Only teardown phases forget facts."""
        if key not in self._index:
            return False
        self._lines = [line for line in self._lines if line.key != key]
        self._reindex()
        self._dirty = True
        return True

    def _drop_earlier(self, key: str, index: int) -> None:
        # A key assigned more than once keeps only the line bash would read last
        kept = [line for i, line in enumerate(self._lines) if line.key != key or i == index]
        if len(kept) != len(self._lines):
            self._lines = kept
            self._reindex()

    def _reindex(self) -> None:
        self._index = {}
        for i, line in enumerate(self._lines):
            if line.key is not None:
                self._index[line.key] = i

    def _prefers_export(self) -> bool:
        assignments = [line for line in self._lines if line.key is not None]
        if not assignments:
            return True
        return sum(line.exported for line in assignments) * 2 >= len(assignments)

    def persist(self) -> None:
        """Write the full mapping to disk atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        text = "\n".join(line.text for line in self._lines) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self._dirty = False
        logger.debug(f"Persisted {len(self)} keys to {self.path}")

    def __repr__(self) -> str:
        return f"VariableStore(path={self.path}, keys={len(self)})"
