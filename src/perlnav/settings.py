"""Per-document settings and the cache that resolves them.

Settings come from one of two places. Clients that support scoped
``workspace/configuration`` requests are asked once per document and the
answer is memoized until a configuration change invalidates everything.
Other clients push a single global value inside ``didChangeConfiguration``
notifications, which replaces the previous one wholesale.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from perlnav.config import SETTINGS_SECTION, TomlTable, merge_payload
from perlnav.exceptions import ConfigurationError
from perlnav.invariants import never, require_not_none

log = logging.getLogger(__name__)

SeverityLevel = Literal["error", "warning", "info", "hint", "none"]

LINT_TIERS = (1, 2, 3, 4, 5)

ConfigurationRequest = Callable[[str, str], Awaitable[object]]


class NavigatorSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    interpreter_path: str = Field(default="perl", alias="perlPath")
    enable_all_warnings: bool = Field(default=False, alias="enableAllWarnings")
    lint_tool_path: str = Field(default="perlcritic", alias="perlcriticPath")
    lint_profile: str = Field(default="", alias="perlcriticProfile")
    severity5: SeverityLevel = "warning"
    severity4: SeverityLevel = "hint"
    severity3: SeverityLevel = "hint"
    severity2: SeverityLevel = "hint"
    severity1: SeverityLevel = "hint"
    include_paths: List[str] = Field(default_factory=list, alias="includePaths")

    def severity_for(self, tier: int) -> SeverityLevel:
        """Display level for a perlcritic severity tier (5 is the most severe)."""
        if tier not in LINT_TIERS:
            never("lint severity tier out of range", tier=tier)
        return getattr(self, f"severity{tier}")

    @classmethod
    def from_payload(
        cls, payload: object, *, base: "NavigatorSettings | None" = None
    ) -> "NavigatorSettings":
        """Validate a client configuration section on top of ``base``.

        ``None`` means the client has nothing configured for this tool and
        yields ``base`` unchanged. Raises ``pydantic.ValidationError`` for
        malformed sections.
        """
        base = base if base is not None else cls()
        if payload is None:
            return base
        if not isinstance(payload, Mapping):
            raise TypeError(
                f"configuration section must be an object, got {type(payload).__name__}"
            )
        merged = merge_payload(dict(payload), base.model_dump(by_alias=True))
        return cls.model_validate(merged)


def default_settings(file_defaults: TomlTable | None = None) -> NavigatorSettings:
    if not file_defaults:
        return NavigatorSettings()
    return NavigatorSettings.from_payload(file_defaults)


class SettingsCache:
    """Memoizes settings per document uri.

    At most one pending or resolved value is held per uri; concurrent lookups
    for the same uri share the in-flight request.
    """

    def __init__(
        self,
        request: ConfigurationRequest | None = None,
        *,
        defaults: NavigatorSettings | None = None,
        scoped: bool = False,
    ) -> None:
        self._request = request
        self._defaults = defaults if defaults is not None else NavigatorSettings()
        self._global = self._defaults
        self._entries: dict[str, asyncio.Future[NavigatorSettings]] = {}
        self.scoped = scoped

    @property
    def defaults(self) -> NavigatorSettings:
        return self._defaults

    @property
    def global_settings(self) -> NavigatorSettings:
        return self._global

    def __contains__(self, uri: object) -> bool:
        return uri in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_settings(self, uri: str) -> NavigatorSettings:
        if not self.scoped or self._request is None:
            return self._global
        entry = self._entries.get(uri)
        if entry is None:
            entry = asyncio.ensure_future(self._resolve(uri))
            self._entries[uri] = entry
            entry.add_done_callback(lambda done: self._drop_failed(uri, done))
        return await asyncio.shield(entry)

    async def _resolve(self, uri: str) -> NavigatorSettings:
        request = require_not_none(
            self._request, reason="scoped settings without a request", uri=uri
        )
        log.debug("requesting %s settings for %s", SETTINGS_SECTION, uri)
        try:
            section = await request(uri, SETTINGS_SECTION)
        except Exception as exc:
            raise ConfigurationError(
                f"configuration request failed for {uri}: {exc}", uri=uri
            ) from exc
        try:
            return NavigatorSettings.from_payload(section, base=self._defaults)
        except (ValidationError, TypeError) as exc:
            raise ConfigurationError(
                f"invalid {SETTINGS_SECTION} settings for {uri}: {exc}", uri=uri
            ) from exc

    def _drop_failed(self, uri: str, done: asyncio.Future[NavigatorSettings]) -> None:
        if done.cancelled() or done.exception() is not None:
            if self._entries.get(uri) is done:
                del self._entries[uri]

    def invalidate_all(self) -> None:
        self._entries.clear()

    def invalidate(self, uri: str) -> None:
        self._entries.pop(uri, None)

    def apply_global(self, payload: Mapping[str, object] | None) -> None:
        section = payload.get(SETTINGS_SECTION) if isinstance(payload, Mapping) else None
        if section is None:
            self._global = self._defaults
            return
        try:
            self._global = NavigatorSettings.from_payload(section, base=self._defaults)
        except (ValidationError, TypeError) as exc:
            raise ConfigurationError(f"invalid {SETTINGS_SECTION} settings: {exc}") from exc

    def on_configuration_changed(self, payload: Mapping[str, object] | None) -> None:
        if self.scoped:
            self.invalidate_all()
        else:
            self.apply_global(payload)
