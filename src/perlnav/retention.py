"""Last-known lint diagnostics per document.

perlcritic is much slower than ``perl -c``. Re-sending the previous lint
findings alongside fresh compile results keeps them from disappearing and
reappearing on every save.
"""

from __future__ import annotations

from typing import Iterable

from lsprotocol.types import Diagnostic


class DiagnosticRetentionStore:
    def __init__(self) -> None:
        self._snapshots: dict[str, tuple[Diagnostic, ...]] = {}

    def get(self, uri: str) -> list[Diagnostic] | None:
        snapshot = self._snapshots.get(uri)
        if snapshot is None:
            return None
        return list(snapshot)

    def set(self, uri: str, diagnostics: Iterable[Diagnostic]) -> None:
        self._snapshots[uri] = tuple(diagnostics)

    def delete(self, uri: str) -> None:
        self._snapshots.pop(uri, None)

    def __contains__(self, uri: object) -> bool:
        return uri in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
