"""labeling_etl.config

Sheet-sync configuration loaded from YAML (config/sheet_sync.yml).

    batch_size: 50
    max_concurrency: 5
    sources:
      - key: public
        label: 공교육
        spreadsheet_id: 1gsM8...
        tabs: [Korean_Labeling, Math_Labeling]     # optional allow-list
        exclude_tabs: [Notes]                      # optional
    subject_aliases:                               # optional, merged over defaults
      Korean_Labeling: 국어
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from labeling_etl.sources import SUBJECT_ALIASES

DEFAULT_SYNC_BATCH_SIZE = 50
DEFAULT_SYNC_CONCURRENCY = 5

REQUIRED_SOURCE_KEYS = frozenset({"key", "spreadsheet_id"})


class SyncConfigError(ValueError):
    """Raised when the sync configuration file is missing or malformed."""


@dataclass(frozen=True)
class SheetSource:
    key: str
    label: str
    spreadsheet_id: str
    tabs: tuple[str, ...] | None = None
    exclude_tabs: tuple[str, ...] = ()

    def wants(self, tab_title: str) -> bool:
        if self.tabs is not None and tab_title not in self.tabs:
            return False
        return tab_title not in self.exclude_tabs


@dataclass
class SyncConfig:
    sources: list[SheetSource]
    subject_aliases: dict[str, str] = field(default_factory=lambda: dict(SUBJECT_ALIASES))
    batch_size: int = DEFAULT_SYNC_BATCH_SIZE
    max_concurrency: int = DEFAULT_SYNC_CONCURRENCY


def _str_list(value: Any, where: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SyncConfigError(f"{where} must be a list of strings.")
    return tuple(value)


def _positive_int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise SyncConfigError(f"'{key}' must be a positive integer, got {value!r}.")
    return value


def parse_sync_config(data: Any) -> SyncConfig:
    """Validate an already-parsed YAML document and build a SyncConfig."""
    if not isinstance(data, dict):
        raise SyncConfigError("YAML root must be a mapping.")

    raw_sources = data.get("sources")
    if not isinstance(raw_sources, list) or not raw_sources:
        raise SyncConfigError("'sources' must be a non-empty list.")

    sources: list[SheetSource] = []
    seen: set[str] = set()
    for pos, entry in enumerate(raw_sources):
        if not isinstance(entry, dict):
            raise SyncConfigError(f"Source #{pos} must be a mapping.")
        missing = REQUIRED_SOURCE_KEYS - set(entry.keys())
        if missing:
            raise SyncConfigError(f"Source #{pos} missing keys: {sorted(missing)}")
        key = str(entry["key"])
        if key in seen:
            raise SyncConfigError(f"Source key '{key}' declared more than once.")
        seen.add(key)
        tabs = entry.get("tabs")
        sources.append(SheetSource(
            key=key,
            label=str(entry.get("label") or key),
            spreadsheet_id=str(entry["spreadsheet_id"]),
            tabs=_str_list(tabs, f"sources[{key}].tabs") if tabs is not None else None,
            exclude_tabs=_str_list(entry.get("exclude_tabs") or [], f"sources[{key}].exclude_tabs"),
        ))

    aliases = dict(SUBJECT_ALIASES)
    raw_aliases = data.get("subject_aliases") or {}
    if not isinstance(raw_aliases, dict):
        raise SyncConfigError("'subject_aliases' must be a mapping.")
    aliases.update({str(k): str(v) for k, v in raw_aliases.items()})

    return SyncConfig(
        sources=sources,
        subject_aliases=aliases,
        batch_size=_positive_int(data, "batch_size", DEFAULT_SYNC_BATCH_SIZE),
        max_concurrency=_positive_int(data, "max_concurrency", DEFAULT_SYNC_CONCURRENCY),
    )


def load_sync_config(yaml_path: Path) -> SyncConfig:
    """Load and validate the sync configuration.

    Raises:
        SyncConfigError: file missing, not YAML, or fails validation.
    """
    try:
        raw = yaml_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SyncConfigError(f"cannot read sync config {yaml_path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SyncConfigError(f"invalid YAML in {yaml_path}: {exc}") from exc
    return parse_sync_config(data)
