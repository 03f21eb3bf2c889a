from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from lsprotocol.types import Diagnostic, DiagnosticSeverity

from perlnav.config import analysis_timeout_seconds, server_defaults, settings_defaults
from perlnav.gateway import PerlAnalysisGateway
from perlnav.settings import NavigatorSettings, default_settings

app = typer.Typer(add_completion=False)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_SEVERITY_NAMES = {
    DiagnosticSeverity.Error: "error",
    DiagnosticSeverity.Warning: "warning",
    DiagnosticSeverity.Information: "info",
    DiagnosticSeverity.Hint: "hint",
}


def _configure_logging(level: str, log_file: Path | None) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"unknown log level: {level}")
    # stdout is reserved for the LSP stream.
    handler: logging.Handler = (
        logging.FileHandler(log_file, encoding="utf-8")
        if log_file is not None
        else logging.StreamHandler(sys.stderr)
    )
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric)


def _load_settings(root: Path, config: Path | None) -> tuple[NavigatorSettings, float]:
    try:
        defaults = default_settings(settings_defaults(root=root, config_path=config))
    except ValueError as exc:
        raise typer.BadParameter(f"invalid [perlnavigator] table: {exc}") from exc
    timeout = analysis_timeout_seconds(server_defaults(root=root, config_path=config))
    return defaults, timeout


def format_lint_line(path: str, diagnostic: Diagnostic) -> str:
    start = diagnostic.range.start
    tag = diagnostic.source or "perlnav"
    if diagnostic.code is not None:
        tag = f"{tag}/{diagnostic.code}"
    severity = _SEVERITY_NAMES.get(diagnostic.severity, "warning")
    return f"{path}:{start.line + 1}:{start.character + 1}: {tag} {severity} {diagnostic.message}"


async def _check_file(
    gateway: PerlAnalysisGateway, path: str, roots: list[str], settings: NavigatorSettings
) -> list[Diagnostic]:
    compiled, critic = await asyncio.gather(
        gateway.fast_check(path, roots, settings),
        gateway.lint_check(path, roots, settings),
    )
    return compiled + critic


async def _check_all(
    gateway: PerlAnalysisGateway, paths: list[str], roots: list[str], settings: NavigatorSettings
) -> list[list[Diagnostic]]:
    return list(
        await asyncio.gather(*(_check_file(gateway, path, roots, settings) for path in paths))
    )


@app.command()
def serve(
    tcp: bool = typer.Option(False, "--tcp", help="Listen on TCP instead of stdio."),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(2087, "--port"),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    log_level: str = typer.Option("info", "--log-level"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
) -> None:
    """Run the language server."""
    from perlnav import server

    _configure_logging(log_level, log_file)
    defaults, timeout = _load_settings(root, config)
    server.server.configure(defaults=defaults, timeout_seconds=timeout)
    server.start(tcp=tcp, host=host, port=port)


@app.command()
def check(
    paths: List[Path] = typer.Argument(..., exists=True, dir_okay=False),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    log_level: str = typer.Option("warning", "--log-level"),
) -> None:
    """Run perl -c and perlcritic once and print the findings."""
    _configure_logging(log_level, None)
    settings, timeout = _load_settings(root, config)
    gateway = PerlAnalysisGateway(timeout_seconds=timeout)
    targets = [str(path) for path in paths]
    results = asyncio.run(_check_all(gateway, targets, [str(root.resolve())], settings))
    found = 0
    for path, diagnostics in zip(targets, results):
        for diagnostic in diagnostics:
            typer.echo(format_lint_line(path, diagnostic))
            found += 1
    if found:
        raise typer.Exit(code=1)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
