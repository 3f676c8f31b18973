"""Remote catalogs of what the last deployment already holds.

Both catalogs are immutable snapshots fetched once per deployment attempt.
Keys match exactly (case-sensitive), the way the remote stores archive paths.
"""

from collections.abc import Mapping
from typing import Any, Dict, Iterator, Optional

CRC_MASK = 0xFFFFFFFF

# Separator between the containing jar path and the inner entry path in
# nested-entry keys, e.g. "WEB-INF/lib/lib.jar/com/acme/X.class".
NESTED_KEY_SEPARATOR = "/"


def nested_key(jar_name: str, inner_name: str) -> str:
    """Key of an entry inside a nested jar."""
    return f"{jar_name}{NESTED_KEY_SEPARATOR}{inner_name}"


def _to_crc(value: Any) -> int:
    """Normalise a remote checksum (int, signed long or decimal string) to unsigned 32-bit."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid checksum: {value!r}")
    if isinstance(value, str):
        value = int(value.strip(), 10)
    elif isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise ValueError(f"Invalid checksum: {value!r}")
    return value & CRC_MASK


def _to_digest(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid digest: {value!r}")
    return value.strip().lower()


class _FrozenCatalog(Mapping):
    """Read-only mapping snapshot."""

    def __init__(self, entries: Dict[str, Any]) -> None:
        self._entries = entries

    def __getitem__(self, key: str) -> Any:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({len(self._entries)} entries)"


class EntryChecksumCatalog(_FrozenCatalog):
    """Archive path -> CRC-32 of the entry as last deployed."""

    def __init__(self, checksums: Optional[Mapping] = None) -> None:
        super().__init__({str(path): _to_crc(crc) for path, crc in (checksums or {}).items()})

    def is_current(self, path: str, crc: int) -> bool:
        """True if the remote already holds this path with this checksum."""
        held = self._entries.get(path)
        return held is not None and held == (crc & CRC_MASK)


class NestedJarHashCatalog(_FrozenCatalog):
    """Nested-entry key ("<jar>/<inner path>") -> SHA-256 hex digest as last deployed."""

    def __init__(self, hashes: Optional[Mapping] = None) -> None:
        super().__init__({str(key): _to_digest(digest) for key, digest in (hashes or {}).items()})

    def is_current(self, key: str, digest: str) -> bool:
        held = self._entries.get(key)
        return held is not None and held == digest.lower()
