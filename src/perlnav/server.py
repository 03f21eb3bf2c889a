from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Sequence
from urllib.parse import unquote, urlparse

from pygls.lsp.server import LanguageServer
from lsprotocol.types import (
    INITIALIZED,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    WORKSPACE_DID_CHANGE_CONFIGURATION,
    WORKSPACE_DID_CHANGE_WATCHED_FILES,
    WORKSPACE_DID_CHANGE_WORKSPACE_FOLDERS,
    ConfigurationItem,
    ConfigurationParams,
    Diagnostic,
    DidChangeConfigurationParams,
    DidChangeWatchedFilesParams,
    DidChangeWorkspaceFoldersParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DidSaveTextDocumentParams,
    InitializedParams,
    PublishDiagnosticsParams,
    Registration,
    RegistrationParams,
)

from perlnav import __version__
from perlnav.config import DEFAULT_ANALYSIS_TIMEOUT_SECONDS
from perlnav.exceptions import ConfigurationError
from perlnav.gateway import PerlAnalysisGateway
from perlnav.orchestrator import ValidationOrchestrator
from perlnav.settings import NavigatorSettings, SettingsCache

log = logging.getLogger(__name__)

SERVER_NAME = "perlnav"
DEFAULT_TCP_HOST = "127.0.0.1"
DEFAULT_TCP_PORT = 2087


def _uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


class PerlNavigatorServer(LanguageServer):
    """Language server that owns one validation orchestrator."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.supports_workspace_folders = False
        self.orchestrator = self._build_orchestrator(
            NavigatorSettings(), DEFAULT_ANALYSIS_TIMEOUT_SECONDS
        )

    def _build_orchestrator(
        self, defaults: NavigatorSettings, timeout_seconds: float
    ) -> ValidationOrchestrator:
        return ValidationOrchestrator(
            PerlAnalysisGateway(timeout_seconds=timeout_seconds),
            self.publish,
            settings=SettingsCache(self.request_settings, defaults=defaults),
            workspace_roots=self.workspace_roots,
        )

    def configure(
        self,
        *,
        defaults: NavigatorSettings | None = None,
        timeout_seconds: float = DEFAULT_ANALYSIS_TIMEOUT_SECONDS,
    ) -> None:
        self.orchestrator = self._build_orchestrator(
            defaults if defaults is not None else NavigatorSettings(), timeout_seconds
        )

    def publish(self, uri: str, diagnostics: list[Diagnostic]) -> None:
        self.text_document_publish_diagnostics(
            PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics)
        )

    async def request_settings(self, uri: str, section: str) -> object:
        result = await self.workspace_configuration_async(
            ConfigurationParams(items=[ConfigurationItem(scope_uri=uri, section=section)])
        )
        return result[0] if result else None

    async def workspace_roots(self) -> Sequence[str]:
        if self.supports_workspace_folders:
            folders = await self.workspace_workspace_folders_async(None)
            return [str(_uri_to_path(folder.uri)) for folder in folders or []]
        root = self.workspace.root_path
        return [root] if root else []


server = PerlNavigatorServer(SERVER_NAME, __version__)


async def _guarded(uri: str, run: Callable[[], Awaitable[None]]) -> None:
    try:
        await run()
    except ConfigurationError as exc:
        log.error("Skipping validation of %s: %s", uri, exc)


@server.feature(INITIALIZED)
async def initialized(ls: PerlNavigatorServer, params: InitializedParams) -> None:
    capabilities = ls.client_capabilities
    workspace = capabilities.workspace if capabilities is not None else None
    ls.orchestrator.settings.scoped = bool(workspace and workspace.configuration)
    ls.supports_workspace_folders = bool(workspace and workspace.workspace_folders)
    if ls.orchestrator.settings.scoped:
        await ls.client_register_capability_async(
            RegistrationParams(
                registrations=[
                    Registration(
                        id=str(uuid.uuid4()),
                        method=WORKSPACE_DID_CHANGE_CONFIGURATION,
                    )
                ]
            )
        )


@server.feature(TEXT_DOCUMENT_DID_OPEN)
async def did_open(ls: PerlNavigatorServer, params: DidOpenTextDocumentParams) -> None:
    uri = params.text_document.uri
    path = str(_uri_to_path(uri))
    await _guarded(uri, lambda: ls.orchestrator.on_open(uri, path))


@server.feature(TEXT_DOCUMENT_DID_SAVE)
async def did_save(ls: PerlNavigatorServer, params: DidSaveTextDocumentParams) -> None:
    uri = params.text_document.uri
    path = str(_uri_to_path(uri))
    await _guarded(uri, lambda: ls.orchestrator.on_save(uri, path))


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: PerlNavigatorServer, params: DidCloseTextDocumentParams) -> None:
    ls.orchestrator.on_close(params.text_document.uri)


@server.feature(WORKSPACE_DID_CHANGE_CONFIGURATION)
async def did_change_configuration(
    ls: PerlNavigatorServer, params: DidChangeConfigurationParams
) -> None:
    payload = params.settings if isinstance(params.settings, dict) else None
    try:
        await ls.orchestrator.on_configuration_changed(payload)
    except ConfigurationError as exc:
        log.error("Configuration change rejected: %s", exc)


@server.feature(WORKSPACE_DID_CHANGE_WATCHED_FILES)
def did_change_watched_files(
    ls: PerlNavigatorServer, params: DidChangeWatchedFilesParams
) -> None:
    ls.orchestrator.on_watched_files_changed(params.changes)


@server.feature(WORKSPACE_DID_CHANGE_WORKSPACE_FOLDERS)
def did_change_workspace_folders(
    ls: PerlNavigatorServer, params: DidChangeWorkspaceFoldersParams
) -> None:
    log.info("Workspace folder change event received.")


def start(
    *,
    tcp: bool = False,
    host: str = DEFAULT_TCP_HOST,
    port: int = DEFAULT_TCP_PORT,
    start_fn: Callable[[], None] | None = None,
) -> None:
    """Start the language server on stdio, or on a TCP socket."""
    if start_fn is not None:
        start_fn()
    elif tcp:
        server.start_tcp(host, port)
    else:
        server.start_io()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
