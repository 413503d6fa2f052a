from __future__ import annotations

"""
content_source.py — where a week's notes + question banks come from

A ContentSource exposes load_notes() / load_question_bank(kind). Two backends:
- FileContentSource: JSON files under a local directory (desktop / tests).
- HttpContentSource: GET with no-cache headers via requests (hosted data).

load_week() is the load barrier: notes, regular bank and long-form bank are
fetched in parallel and all of them must succeed before the schema adapter
runs. The long-form bank may list several candidate files; they are tried
in order and the first success wins.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

import medquest_core as core
from content_schema import POOL_LONG, POOL_REGULAR, StudyContent, TopicAliasResolver, build_study_content

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}
HTTP_TIMEOUT_SEC = 30


# ============================================================
# Week manifest
# ============================================================
@dataclass
class WeekConfig:
    """
    One entry of weeks.json:
      {id, label?, subtitle?, kind: "json"|"legacy", notes, qbank,
       long_qbank?: [..candidates..], aliases?: {raw: canonical}, unify?: bool}

    kind "json": a single bank feeds both pools and the pools are unified.
    kind "legacy": the long-form pool comes from long_qbank (first success wins).
    """

    id: str
    label: str = ""
    subtitle: str = ""
    kind: str = "json"
    notes: str = "master_notes.json"
    qbank: str = "master_nbme_questions.json"
    long_qbank: List[str] = field(default_factory=list)
    aliases: Dict[str, str] = field(default_factory=dict)
    unify: Optional[bool] = None

    @property
    def title(self) -> str:
        return self.label or f"Week {self.id}"

    @property
    def separate_long_bank(self) -> bool:
        return self.kind == "legacy" and bool(self.long_qbank)

    @property
    def unify_pools(self) -> bool:
        if self.unify is None:
            return self.kind == "json"
        return bool(self.unify)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "WeekConfig":
        long_q = d.get("long_qbank") or []
        if isinstance(long_q, str):
            long_q = [long_q]
        aliases = d.get("aliases") if isinstance(d.get("aliases"), dict) else {}
        unify = d.get("unify")
        return WeekConfig(
            id=str(d.get("id", "")),
            label=str(d.get("label", "") or ""),
            subtitle=str(d.get("subtitle", "") or ""),
            kind=str(d.get("kind", "json") or "json").strip().lower(),
            notes=str(d.get("notes") or "master_notes.json"),
            qbank=str(d.get("qbank") or "master_nbme_questions.json"),
            long_qbank=[str(x) for x in long_q if x],
            aliases={str(k): str(v) for k, v in aliases.items()},
            unify=None if unify is None else bool(unify),
        )


DEFAULT_WEEKS: List[WeekConfig] = [
    WeekConfig(
        id="6",
        label="Week 6 — Immunology",
        kind="json",
        notes="week6_notes.json",
        qbank="week6_qbank.json",
    ),
    WeekConfig(
        id="5",
        label="Week 5 (Legacy)",
        kind="legacy",
        notes="master_notes.json",
        qbank="master_nbme_questions.json",
        long_qbank=["master_nbme_questions_LONG_LAYER.json"],
    ),
]


def parse_manifest(data: Any) -> List[WeekConfig]:
    weeks = data.get("weeks") if isinstance(data, dict) else data
    if not isinstance(weeks, list):
        raise ValueError('weeks.json must be {"weeks": [ ... ]}')
    out = [WeekConfig.from_dict(w) for w in weeks if isinstance(w, dict) and w.get("id") is not None]
    return out


# ============================================================
# Sources
# ============================================================
class ContentSource(ABC):
    """Base: subclasses only implement fetch_json(name)."""

    def __init__(self, week: Optional[WeekConfig] = None):
        self.week = week

    @abstractmethod
    def fetch_json(self, name: str) -> Any:
        ...

    def require_week(self) -> WeekConfig:
        if self.week is None:
            raise LookupError("No week selected for this content source")
        return self.week

    def load_manifest(self) -> List[WeekConfig]:
        return parse_manifest(self.fetch_json(core.MANIFEST_FILE))

    def load_notes(self) -> Any:
        return self.fetch_json(self.require_week().notes)

    def load_question_bank(self, kind: str = POOL_REGULAR) -> Any:
        week = self.require_week()
        if kind == POOL_LONG and week.separate_long_bank:
            return self.fetch_first(week.long_qbank)
        return self.fetch_json(week.qbank)

    def fetch_first(self, names: List[str]) -> Any:
        last_err: Optional[Exception] = None
        for n in names:
            try:
                return self.fetch_json(n)
            except core.LoadError as e:
                logger.warning(f"Failed fetch: {n}: {e}")
                last_err = e
        raise core.ShapeFallbackExhausted(f"All long-form sources failed. Last error: {last_err}")


class FileContentSource(ContentSource):
    def __init__(self, base_dir: Path, week: Optional[WeekConfig] = None):
        super().__init__(week)
        self.base_dir = Path(base_dir)

    def fetch_json(self, name: str) -> Any:
        path = self.base_dir / name
        if not path.exists():
            raise core.LoadError(f"Missing content file: {path}")
        try:
            return core.safe_load_json(path)
        except ValueError as e:
            raise core.LoadError(str(e)) from e


class HttpContentSource(ContentSource):
    def __init__(
        self,
        base_url: str,
        week: Optional[WeekConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SEC,
    ):
        super().__init__(week)
        self.base_url = base_url.rstrip("/")
        # payloads are fetched from worker threads; Session is not thread-safe,
        # so without an injected one each call goes through requests.get
        self.session = session
        self.timeout = timeout

    def url_for(self, name: str) -> str:
        if name.startswith(("http://", "https://")):
            return name
        return f"{self.base_url}/{name.lstrip('/')}"

    def fetch_json(self, name: str) -> Any:
        url = self.url_for(name)
        try:
            getter = self.session.get if self.session is not None else requests.get
            res = getter(url, headers=NO_CACHE_HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            raise core.LoadError(f"Failed to load {url}: {e}") from e

        if not (200 <= res.status_code < 300):
            raise core.LoadError(f"Failed to load {url}: {res.status_code} {res.reason}\n{res.text[:200]}")

        ct = res.headers.get("content-type", "") or ""
        if "application/json" not in ct.lower():
            raise core.LoadError(f"Expected JSON from {url} but got {ct or 'no content-type'}:\n{res.text[:200]}")

        try:
            return res.json()
        except ValueError as e:
            raise core.LoadError(f"Invalid JSON from {url}: {e}") from e


def make_source(base: Optional[str] = None, week: Optional[WeekConfig] = None) -> ContentSource:
    b = str(base or core.CONTENT_BASE)
    if b.startswith(("http://", "https://")):
        return HttpContentSource(b, week)
    return FileContentSource(Path(b), week)


# ============================================================
# Loading
# ============================================================
def load_weeks(source: ContentSource) -> List[WeekConfig]:
    """Manifest weeks, or the built-in list when the manifest is unavailable."""
    try:
        weeks = source.load_manifest()
    except (core.LoadError, ValueError) as e:
        logger.error(f"Failed to load weeks manifest: {e}")
        return list(DEFAULT_WEEKS)
    return weeks or list(DEFAULT_WEEKS)


def fetch_week_payloads(source: ContentSource) -> Tuple[Any, Any, Any]:
    """
    (notes, regular_bank, long_bank). long_bank is None when the week uses a
    single bank for both pools. Any failure aborts the whole load.
    """
    week = source.require_week()
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="mq-load") as pool:
        f_notes = pool.submit(source.load_notes)
        f_reg = pool.submit(source.load_question_bank, POOL_REGULAR)
        f_long = pool.submit(source.load_question_bank, POOL_LONG) if week.separate_long_bank else None

        try:
            notes = f_notes.result()
            regular = f_reg.result()
            long_bank = f_long.result() if f_long is not None else None
        except core.LoadError:
            raise
        except Exception as e:
            raise core.LoadError(f"Failed to load week {week.id}: {e}") from e

    return notes, regular, long_bank


def load_week(source: ContentSource) -> StudyContent:
    week = source.require_week()
    notes, regular, long_bank = fetch_week_payloads(source)
    logger.info(f"Loaded week {week.id} payloads (separate long bank: {long_bank is not None})")
    return build_study_content(
        notes,
        regular,
        long_bank,
        resolver=TopicAliasResolver(week.aliases),
        unify=week.unify_pools,
    )
