from __future__ import annotations

"""
medquest_core.py — MedQuest study trainer shared core

- Paths, constants and defaults used across the content/quiz/progress modules.
- Persistence backend switch:
    - "disk": progress lives in progress.json (desktop)
    - "session": no file I/O (Streamlit Cloud friendly)
- JSON helpers with readable errors + atomic writes.
- The error taxonomy the UI reacts to.

This file intentionally does NOT import Streamlit.
"""

import json
import logging
import re
import time
from datetime import date
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Dict, List


# ============================================================
# Paths
# ============================================================
CONTENT_DIR = Path("content")
MANIFEST_FILE = "weeks.json"

PROGRESS_FILE = Path("progress.json")

# Backups
BACKUP_DIR = Path("backups")

# Directory or http(s) base URL the week files are served from.
CONTENT_BASE = str(CONTENT_DIR)


# ============================================================
# Persistence backend
# ============================================================
# "disk"   -> read/write PROGRESS_FILE
# "session"-> no disk reads/writes (caller keeps state in memory/session_state)
PERSISTENCE_BACKEND = "disk"


def set_persistence_backend(mode: str) -> None:
    global PERSISTENCE_BACKEND
    m = str(mode or "").strip().lower()
    if m not in ("disk", "session"):
        m = "disk"
    PERSISTENCE_BACKEND = m


def set_content_base(base: str) -> None:
    global CONTENT_BASE
    CONTENT_BASE = str(base or "").strip() or str(CONTENT_DIR)


# ============================================================
# Constants / Defaults
# ============================================================
# Stems longer than this are treated as long-form (vignette) questions.
LONG_FORM_STEM_THRESHOLD = 280

QID_STEM_CHARS = 60

BATTLE_LENGTH = 10
VIGNETTE_LENGTH = 10
RETEST_LENGTH = 10

UNLOCK_STREAK = 3

DEFAULT_SECONDS_PER_QUESTION = 75
MIN_SECONDS_PER_QUESTION = 10
MAX_SECONDS_PER_QUESTION = 600

DIFFICULTIES = ("easy", "medium", "hard")

GENERAL_TOPIC = "General"
GENERAL_SUBTOPIC = "All"

IMAGE_SANDBOX_PREFIX = "sandbox:/mnt/data/"
IMAGE_PUBLIC_PREFIX = "/qimages/"

# Required display order for the lecture topics; anything else is appended A→Z.
TOPIC_ORDER: List[str] = [
    "Introduction to Neoplasia",
    "Genetic Testing for Familial Cancer Syndromes",
    "Molecular Diagnostics",
    "Cytogenetics",
    "Introduction to Carcinogenesis",
    "Nucleotide Metabolism",
    "Cytogenetics of Cancer",
    "Foundations of Cancer Screening & Diagnosis",
    "Foundations of Cancer Therapy",
    "Cancer Survival Mechanisms",
    "Individualizing Care of Cancer Patient",
    "Genetic Counseling of Familial Cancers",
]

# Raw-normalized topic name -> canonical-normalized topic name.
TOPIC_ALIASES: Dict[str, str] = {}


# ============================================================
# Errors
# ============================================================
class MedQuestError(Exception):
    """Base class for errors the UI knows how to render."""


class LoadError(MedQuestError):
    """Network/status/content-type failure while loading week content."""


class ShapeFallbackExhausted(LoadError):
    """Every candidate source for the long-form bank failed."""


class EmptyPoolError(MedQuestError):
    """A quiz was requested against a pool that is empty after filtering."""


# ============================================================
# Logging
# ============================================================
def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ============================================================
# Helpers
# ============================================================
def now_ts() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def today_ymd() -> str:
    return date.today().isoformat()


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def norm(s: Any) -> str:
    """Case-fold + whitespace-collapse; None becomes ''."""
    if s is None:
        return ""
    return re.sub(r"\s+", " ", str(s).lower()).strip()


def first_present(obj: Any, keys: List[str], default: Any = None) -> Any:
    """First key whose value is not None."""
    if not isinstance(obj, dict):
        return default
    for k in keys:
        if obj.get(k) is not None:
            return obj[k]
    return default


def first_nonblank(obj: Any, keys: List[str], default: Any = None) -> Any:
    """First key whose value is present and not blank once stringified."""
    if not isinstance(obj, dict):
        return default
    for k in keys:
        v = obj.get(k)
        if v is not None and str(v).strip() != "":
            return v
    return default


def safe_load_json(path: Path) -> Any:
    try:
        txt = path.read_text(encoding="utf-8")
    except Exception as e:
        raise ValueError(f"Failed reading {path}: {e}") from e
    return parse_json_text(txt, str(path))


def parse_json_text(txt: str, where: str) -> Any:
    try:
        return json.loads(txt)
    except JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {where} (line {e.lineno}, col {e.colno}): {e.msg}") from e


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
