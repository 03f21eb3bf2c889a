"""Validation runs: drive both analyses and publish their results in two stages.

A run publishes twice. Stage 1 fires as soon as ``perl -c`` finishes and pairs
its results with the lint findings retained from the previous run. Stage 2
fires when ``perlcritic`` finishes, replaces the retained findings and pairs
them with the same run's compile results.

Runs are never cancelled. Overlapping runs for one document publish
independently and the last publish wins; every publish carries the full
diagnostic set for the document, so the client always sees a consistent state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, Sequence

from lsprotocol.types import Diagnostic

from perlnav.exceptions import ConfigurationError
from perlnav.gateway import AnalysisGateway
from perlnav.retention import DiagnosticRetentionStore
from perlnav.settings import SettingsCache

log = logging.getLogger(__name__)

Publisher = Callable[[str, list[Diagnostic]], None]
WorkspaceRoots = Callable[[], Awaitable[Sequence[str]]]


async def _no_roots() -> Sequence[str]:
    return ()


class ValidationOrchestrator:
    def __init__(
        self,
        gateway: AnalysisGateway,
        publish: Publisher,
        *,
        settings: SettingsCache | None = None,
        retention: DiagnosticRetentionStore | None = None,
        workspace_roots: WorkspaceRoots = _no_roots,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.settings = settings if settings is not None else SettingsCache()
        self.retention = retention if retention is not None else DiagnosticRetentionStore()
        self._publish = publish
        self._workspace_roots = workspace_roots
        self._clock = clock
        self._open: dict[str, str] = {}

    @property
    def open_documents(self) -> dict[str, str]:
        return dict(self._open)

    async def validate(self, uri: str, path: str) -> None:
        settings = await self.settings.get_settings(uri)
        start = self._clock()
        roots = list(await self._workspace_roots())

        compile_task = asyncio.ensure_future(self.gateway.fast_check(path, roots, settings))
        critic_task = asyncio.ensure_future(self.gateway.lint_check(path, roots, settings))

        compiled = await compile_task
        log.info("Compilation Time: %.3f seconds (%s)", self._clock() - start, uri)
        retained = self.retention.get(uri)
        if retained:
            self._publish(uri, compiled + retained)
        else:
            self._publish(uri, list(compiled))

        critic = await critic_task
        self.retention.set(uri, critic)
        log.info("Perl Critic Time: %.3f seconds (%s)", self._clock() - start, uri)
        self._publish(uri, compiled + critic)

    async def on_open(self, uri: str, path: str) -> None:
        self._open[uri] = path
        await self.validate(uri, path)

    async def on_save(self, uri: str, path: str) -> None:
        self._open[uri] = path
        await self.validate(uri, path)

    def on_close(self, uri: str) -> None:
        self._open.pop(uri, None)
        self.settings.invalidate(uri)
        self.retention.delete(uri)
        self._publish(uri, [])

    async def on_configuration_changed(self, payload: Mapping[str, object] | None) -> None:
        self.settings.on_configuration_changed(payload)
        documents = list(self._open.items())
        log.info("Revalidating %d open document(s)", len(documents))
        outcomes = await asyncio.gather(
            *(self.validate(uri, path) for uri, path in documents),
            return_exceptions=True,
        )
        for (uri, _path), outcome in zip(documents, outcomes):
            if isinstance(outcome, ConfigurationError):
                log.error("Skipping validation of %s: %s", uri, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

    def on_watched_files_changed(self, changes: Sequence[object]) -> None:
        log.info("Received %d watched file change(s)", len(changes))
