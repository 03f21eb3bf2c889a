"""Adapters around the two external Perl analyses.

``fast_check`` runs ``perl -c`` and ``lint_check`` runs ``perlcritic``. Both
return a list of diagnostics and never raise: anything that stops a tool from
producing output is reported as a single synthetic diagnostic on the first
line of the file, so one broken tool never hides the other's findings.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

from lsprotocol.types import Diagnostic, DiagnosticSeverity, Position, Range

from perlnav.config import DEFAULT_ANALYSIS_TIMEOUT_SECONDS
from perlnav.exceptions import AnalysisExecutionError
from perlnav.settings import NavigatorSettings, SeverityLevel

log = logging.getLogger(__name__)

COMPILE_SOURCE = "perl"
CRITIC_SOURCE = "perlcritic"

WORKSPACE_FOLDER_VAR = "$workspaceFolder"
CRITIC_VERBOSE_FORMAT = "%s~|~%l~|~%c~|~%m~|~%p~||~%n"
_CRITIC_FIELD_SEP = "~|~"
_CRITIC_RECORD_END = "~||~"
_CRITIC_OK_STATUSES = frozenset({0, 2})

_LINE_END = 500

_COMPILE_LOCATION_RE = re.compile(
    r"^(?P<message>.*)\s+at\s+(?P<file>\S.*?)\s+line\s+(?P<line>\d+)(?:[.,].*)?$"
)
_COMPILE_ERROR_RE = re.compile(
    r"syntax error"
    r"|Global symbol"
    r"|Can't locate"
    r"|BEGIN failed"
    r"|BEGIN not safe"
    r"|compilation aborted"
    r"|Missing right curly"
    r"|Unmatched right curly"
    r"|Can't find string terminator"
    r"|Bareword \".*\" not allowed"
    r"|is not exported"
)

_DISPLAY_SEVERITY: dict[SeverityLevel, DiagnosticSeverity | None] = {
    "error": DiagnosticSeverity.Error,
    "warning": DiagnosticSeverity.Warning,
    "info": DiagnosticSeverity.Information,
    "hint": DiagnosticSeverity.Hint,
    "none": None,
}


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


ProcessRunner = Callable[[Sequence[str], float], Awaitable[ProcessResult]]


class AnalysisGateway(Protocol):
    async def fast_check(
        self, path: str, roots: Sequence[str], settings: NavigatorSettings
    ) -> list[Diagnostic]: ...

    async def lint_check(
        self, path: str, roots: Sequence[str], settings: NavigatorSettings
    ) -> list[Diagnostic]: ...


async def run_process(argv: Sequence[str], timeout: float) -> ProcessResult:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise AnalysisExecutionError(f"timed out after {timeout:g} seconds") from None
    return ProcessResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _line_range(line: int, character: int = 0) -> Range:
    line = max(0, line)
    return Range(
        start=Position(line=line, character=max(0, character)),
        end=Position(line=line, character=_LINE_END),
    )


def failure_diagnostic(source: str, detail: str) -> Diagnostic:
    return Diagnostic(
        range=_line_range(0),
        message=f"{source} failed: {detail}",
        severity=DiagnosticSeverity.Warning,
        source=source,
    )


def _first_line(text: str) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def include_arguments(roots: Sequence[str], settings: NavigatorSettings) -> list[str]:
    args: list[str] = []
    for include in settings.include_paths:
        if WORKSPACE_FOLDER_VAR in include:
            for root in roots:
                args.append("-I" + include.replace(WORKSPACE_FOLDER_VAR, root))
        else:
            args.append("-I" + include)
    for root in roots:
        args.append("-I" + root)
    return args


def compile_command(
    path: str, roots: Sequence[str], settings: NavigatorSettings
) -> list[str]:
    argv = [settings.interpreter_path, "-c"]
    if settings.enable_all_warnings:
        argv.append("-Mwarnings")
    argv.extend(include_arguments(roots, settings))
    argv.append(path)
    return argv


def critic_command(path: str, settings: NavigatorSettings) -> list[str]:
    argv = [settings.lint_tool_path, "--verbose", CRITIC_VERBOSE_FORMAT]
    if settings.lint_profile:
        argv.extend(["--profile", settings.lint_profile])
    argv.append(path)
    return argv


def _same_file(reported: str, path: str) -> bool:
    return os.path.normpath(reported) == os.path.normpath(path)


def parse_compile_output(output: str, path: str) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    for raw in output.splitlines():
        line = raw.strip()
        match = _COMPILE_LOCATION_RE.match(line)
        if match is None:
            continue
        line_no = int(match.group("line")) - 1
        if not _same_file(match.group("file"), path):
            line_no = 0
        severity = (
            DiagnosticSeverity.Error
            if _COMPILE_ERROR_RE.search(line)
            else DiagnosticSeverity.Warning
        )
        diagnostics.append(
            Diagnostic(
                range=_line_range(line_no),
                message=line,
                severity=severity,
                source=COMPILE_SOURCE,
            )
        )
    return diagnostics


def compile_diagnostics(result: ProcessResult, path: str) -> list[Diagnostic]:
    diagnostics = parse_compile_output(result.stderr, path)
    if result.returncode != 0 and not diagnostics:
        detail = _first_line(result.stderr) or f"exit status {result.returncode}"
        return [failure_diagnostic(COMPILE_SOURCE, detail)]
    return diagnostics


def parse_critic_output(output: str, settings: NavigatorSettings) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line.endswith(_CRITIC_RECORD_END):
            continue
        fields = line[: -len(_CRITIC_RECORD_END)].split(_CRITIC_FIELD_SEP)
        if len(fields) != 5:
            continue
        tier_text, line_text, col_text, message, policy = fields
        try:
            tier = int(tier_text)
            line_no = int(line_text)
            col_no = int(col_text)
        except ValueError:
            continue
        if tier not in (1, 2, 3, 4, 5):
            continue
        severity = _DISPLAY_SEVERITY[settings.severity_for(tier)]
        if severity is None:
            continue
        diagnostics.append(
            Diagnostic(
                range=_line_range(line_no - 1, col_no - 1),
                message=f"{message} ({policy})",
                severity=severity,
                code=policy,
                source=CRITIC_SOURCE,
            )
        )
    return diagnostics


def critic_diagnostics(result: ProcessResult, settings: NavigatorSettings) -> list[Diagnostic]:
    if result.returncode not in _CRITIC_OK_STATUSES:
        detail = (
            _first_line(result.stderr)
            or _first_line(result.stdout)
            or f"exit status {result.returncode}"
        )
        return [failure_diagnostic(CRITIC_SOURCE, detail)]
    return parse_critic_output(result.stdout, settings)


class PerlAnalysisGateway:
    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_ANALYSIS_TIMEOUT_SECONDS,
        runner: ProcessRunner = run_process,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._runner = runner

    async def fast_check(
        self, path: str, roots: Sequence[str], settings: NavigatorSettings
    ) -> list[Diagnostic]:
        argv = compile_command(path, roots, settings)
        return await self._contained(
            COMPILE_SOURCE, argv, lambda result: compile_diagnostics(result, path)
        )

    async def lint_check(
        self, path: str, roots: Sequence[str], settings: NavigatorSettings
    ) -> list[Diagnostic]:
        argv = critic_command(path, settings)
        return await self._contained(
            CRITIC_SOURCE, argv, lambda result: critic_diagnostics(result, settings)
        )

    async def _contained(
        self,
        source: str,
        argv: list[str],
        convert: Callable[[ProcessResult], list[Diagnostic]],
    ) -> list[Diagnostic]:
        # Every failure ends up as a diagnostic; callers never see an exception.
        try:
            result = await self._runner(argv, self.timeout_seconds)
            return convert(result)
        except FileNotFoundError:
            log.warning("%s executable not found: %s", source, argv[0])
            return [failure_diagnostic(source, f"executable not found: {argv[0]}")]
        except AnalysisExecutionError as exc:
            log.warning("%s did not complete: %s", source, exc)
            return [failure_diagnostic(source, str(exc))]
        except Exception as exc:
            log.exception("%s could not be run", source)
            return [failure_diagnostic(source, str(exc) or type(exc).__name__)]
