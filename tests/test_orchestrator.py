from __future__ import annotations

import asyncio

import pytest

from perlnav.exceptions import ConfigurationError
from perlnav.orchestrator import ValidationOrchestrator
from perlnav.settings import NavigatorSettings, SettingsCache
from tests.lsp_helpers import PublishRecorder, ScriptedGateway, make_diagnostic, messages

URI_A = "file:///w/a.pl"
PATH_A = "/w/a.pl"


def _orchestrator(
    gateway: ScriptedGateway,
    recorder: PublishRecorder,
    *,
    settings: SettingsCache | None = None,
    roots: tuple[str, ...] = ("/w",),
) -> ValidationOrchestrator:
    async def _roots() -> tuple[str, ...]:
        return roots

    return ValidationOrchestrator(
        gateway, recorder, settings=settings, workspace_roots=_roots
    )


async def _until(condition, *, limit: int = 300) -> None:
    for _ in range(limit):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_open_then_immediate_save_scenario() -> None:
    syntax = make_diagnostic(3, "syntax error")
    strict = make_diagnostic(10, "style: missing strict", source="perlcritic")
    gateway = ScriptedGateway()
    gateway.queue_fast([syntax], delay=0.05)
    gateway.queue_lint([strict], delay=0.4)
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder)

    await orchestrator.on_open(URI_A, PATH_A)

    first, second = recorder.for_uri(URI_A)
    assert messages(first) == ["syntax error"]
    assert messages(second) == ["syntax error", "style: missing strict"]
    assert messages(orchestrator.retention.get(URI_A)) == ["style: missing strict"]

    release_lint = asyncio.Event()
    gateway.queue_fast([], delay=0.05)
    gateway.queue_lint([strict], gate=release_lint)
    run = asyncio.ensure_future(orchestrator.on_save(URI_A, PATH_A))
    await _until(lambda: len(recorder.for_uri(URI_A)) == 3)
    assert messages(recorder.for_uri(URI_A)[2]) == ["style: missing strict"]

    release_lint.set()
    await run
    assert len(recorder.for_uri(URI_A)) == 4


@pytest.mark.asyncio
async def test_both_analyses_start_before_either_completes() -> None:
    gate = asyncio.Event()
    gateway = ScriptedGateway()
    gateway.queue_fast([], gate=gate)
    gateway.queue_lint([], gate=gate)
    recorder = PublishRecorder()
    run = asyncio.ensure_future(_orchestrator(gateway, recorder).validate(URI_A, PATH_A))
    await _until(lambda: len(gateway.started) == 2)
    assert sorted(gateway.started) == ["fast", "lint"]
    assert recorder.published == []
    gate.set()
    await run


@pytest.mark.asyncio
async def test_stage_one_waits_only_for_fast_check() -> None:
    release_lint = asyncio.Event()
    gateway = ScriptedGateway()
    gateway.queue_fast([make_diagnostic(0, "compile")])
    gateway.queue_lint([make_diagnostic(1, "critic", source="perlcritic")], gate=release_lint)
    recorder = PublishRecorder()
    run = asyncio.ensure_future(_orchestrator(gateway, recorder).validate(URI_A, PATH_A))
    await _until(lambda: len(recorder.published) == 1)
    assert messages(recorder.published[0][1]) == ["compile"]
    release_lint.set()
    await run
    assert messages(recorder.published[1][1]) == ["compile", "critic"]


@pytest.mark.asyncio
async def test_stage_two_follows_stage_one_even_when_lint_finishes_first() -> None:
    release_fast = asyncio.Event()
    gateway = ScriptedGateway()
    gateway.queue_fast([make_diagnostic(0, "compile")], gate=release_fast)
    gateway.queue_lint([make_diagnostic(1, "critic", source="perlcritic")])
    recorder = PublishRecorder()
    run = asyncio.ensure_future(_orchestrator(gateway, recorder).validate(URI_A, PATH_A))
    await _until(lambda: gateway.started == ["fast", "lint"])
    for _ in range(5):
        await asyncio.sleep(0)
    assert recorder.published == []
    release_fast.set()
    await run
    stage_one, stage_two = recorder.for_uri(URI_A)
    assert messages(stage_one) == ["compile"]
    assert stage_two[: len(stage_one)] == stage_one


@pytest.mark.asyncio
async def test_identical_lint_results_publish_identical_stage_two() -> None:
    critic = [make_diagnostic(4, "critic", source="perlcritic")]
    gateway = ScriptedGateway()
    for _ in range(2):
        gateway.queue_fast([make_diagnostic(1, "compile")])
        gateway.queue_lint(critic)
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder)
    await orchestrator.on_open(URI_A, PATH_A)
    await orchestrator.on_save(URI_A, PATH_A)
    published = recorder.for_uri(URI_A)
    assert len(published) == 4
    assert published[1] == published[3]
    assert messages(published[2]) == ["compile", "critic"]


@pytest.mark.asyncio
async def test_empty_lint_result_replaces_snapshot() -> None:
    gateway = ScriptedGateway()
    gateway.queue_lint([make_diagnostic(4, "old", source="perlcritic")])
    gateway.queue_lint([])
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder)
    await orchestrator.validate(URI_A, PATH_A)
    await orchestrator.validate(URI_A, PATH_A)
    assert orchestrator.retention.get(URI_A) == []
    assert recorder.for_uri(URI_A)[-1] == []


@pytest.mark.asyncio
async def test_close_clears_state_and_publishes_empty() -> None:
    client_sections: list[str] = []

    async def _request(uri: str, section: str) -> object:
        client_sections.append(uri)
        return {}

    cache = SettingsCache(_request, scoped=True)
    gateway = ScriptedGateway()
    gateway.queue_lint([make_diagnostic(2, "critic", source="perlcritic")])
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder, settings=cache)
    await orchestrator.on_open(URI_A, PATH_A)
    assert URI_A in cache and URI_A in orchestrator.retention

    orchestrator.on_close(URI_A)
    assert URI_A not in cache
    assert URI_A not in orchestrator.retention
    assert URI_A not in orchestrator.open_documents
    assert recorder.published[-1] == (URI_A, [])


@pytest.mark.asyncio
async def test_close_does_not_cancel_in_flight_run() -> None:
    release_lint = asyncio.Event()
    gateway = ScriptedGateway()
    gateway.queue_lint([make_diagnostic(2, "late", source="perlcritic")], gate=release_lint)
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder)
    run = asyncio.ensure_future(orchestrator.on_open(URI_A, PATH_A))
    await _until(lambda: len(recorder.published) == 1)
    orchestrator.on_close(URI_A)
    release_lint.set()
    await run
    assert messages(recorder.published[-1][1]) == ["late"]


@pytest.mark.asyncio
async def test_configuration_change_revalidates_each_open_document_once() -> None:
    gateway = ScriptedGateway()
    recorder = PublishRecorder()
    orchestrator = _orchestrator(gateway, recorder)
    uris = [f"file:///w/{name}.pl" for name in ("a", "b", "c")]
    for uri in uris:
        await orchestrator.on_open(uri, uri[len("file://"):])
    orchestrator.on_close(uris[1])
    gateway.calls.clear()
    recorder.published.clear()

    await orchestrator.on_configuration_changed(
        {"perlnavigator": {"perlcriticProfile": "strict"}}
    )

    fast_paths = sorted(path for kind, path, _, _ in gateway.calls if kind == "fast")
    assert fast_paths == ["/w/a.pl", "/w/c.pl"]
    assert all(settings.lint_profile == "strict" for _, _, _, settings in gateway.calls)
    assert sorted({uri for uri, _ in recorder.published}) == [uris[0], uris[2]]
    assert len(recorder.published) == 4


@pytest.mark.asyncio
async def test_configuration_change_skips_documents_whose_settings_fail() -> None:
    async def _request(uri: str, section: str) -> object:
        if uri.endswith("bad.pl"):
            raise RuntimeError("rejected")
        return None

    gateway = ScriptedGateway()
    recorder = PublishRecorder()
    orchestrator = _orchestrator(
        gateway, recorder, settings=SettingsCache(_request, scoped=False)
    )
    await orchestrator.on_open("file:///w/good.pl", "/w/good.pl")
    await orchestrator.on_open("file:///w/bad.pl", "/w/bad.pl")
    orchestrator.settings.scoped = True
    recorder.published.clear()

    await orchestrator.on_configuration_changed(None)
    assert {uri for uri, _ in recorder.published} == {"file:///w/good.pl"}


@pytest.mark.asyncio
async def test_settings_failure_propagates_from_validate() -> None:
    async def _request(uri: str, section: str) -> object:
        raise RuntimeError("no configuration")

    gateway = ScriptedGateway()
    recorder = PublishRecorder()
    orchestrator = _orchestrator(
        gateway, recorder, settings=SettingsCache(_request, scoped=True)
    )
    with pytest.raises(ConfigurationError):
        await orchestrator.validate(URI_A, PATH_A)
    assert gateway.calls == []
    assert recorder.published == []


@pytest.mark.asyncio
async def test_validate_passes_settings_roots_and_path_to_gateway() -> None:
    defaults = NavigatorSettings(perlPath="/opt/perl")
    gateway = ScriptedGateway()
    recorder = PublishRecorder()
    orchestrator = _orchestrator(
        gateway, recorder, settings=SettingsCache(defaults=defaults), roots=("/w", "/v")
    )
    await orchestrator.validate(URI_A, PATH_A)
    assert [(kind, path, roots) for kind, path, roots, _ in gateway.calls] == [
        ("fast", PATH_A, ("/w", "/v")),
        ("lint", PATH_A, ("/w", "/v")),
    ]
    assert all(settings is defaults for _, _, _, settings in gateway.calls)


def test_watched_file_changes_are_only_logged(caplog: pytest.LogCaptureFixture) -> None:
    recorder = PublishRecorder()
    orchestrator = _orchestrator(ScriptedGateway(), recorder)
    with caplog.at_level("INFO", logger="perlnav.orchestrator"):
        orchestrator.on_watched_files_changed([object(), object()])
    assert recorder.published == []
    assert "2 watched file change(s)" in caplog.text
