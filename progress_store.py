from __future__ import annotations

"""
progress_store.py — per-subtopic accuracy, missed/retested ledgers, topic unlocks

ProgressStore is the single aggregate for everything the app persists. It is
read once from a key-value store (load) and written back at explicit points
(save). Keys and shapes match what earlier builds kept in browser storage:

  mq_topic_unlocks  ["Topic", ...]
  mq_stats          {"subs": {"topic|sub": {attempted, correct}}, "quizzes": [{title, total, correct, ts}]}
  mq_missed         {qid: question snapshot}
  mq_retested       {qid: question snapshot + retested_at}
  mq_timer_on       bool
  mq_sec_per_q      int
  mq_diffset        ["easy", "medium", "hard"] (never empty)
  mq_explore        bool
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import medquest_core as core
from content_schema import Question, TopicAliasResolver

logger = logging.getLogger(__name__)

KEY_UNLOCKS = "mq_topic_unlocks"
KEY_STATS = "mq_stats"
KEY_MISSED = "mq_missed"
KEY_RETESTED = "mq_retested"
KEY_TIMER_ON = "mq_timer_on"
KEY_SEC_PER_Q = "mq_sec_per_q"
KEY_DIFFSET = "mq_diffset"
KEY_EXPLORE = "mq_explore"

LEDGER_MISSED = "missed"
LEDGER_RETESTED = "retested"


# ============================================================
# Key-value stores
# ============================================================
class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        ...

    def set_many(self, items: Dict[str, Any]) -> None:
        for k, v in items.items():
            self.set(k, v)


class MemoryStore(KeyValueStore):
    """Session-only store (nothing touches disk)."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.data)


class JsonFileStore(MemoryStore):
    """All keys in one JSON object on disk; every write replaces the file atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)
        data: Dict[str, Any] = {}
        if self.path.exists():
            loaded = core.safe_load_json(self.path)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning(f"{self.path} is not a JSON object; starting with empty progress")
        super().__init__(data)

    def set(self, key: str, value: Any) -> None:
        super().set(key, value)
        core.atomic_write_json(self.path, self.data, indent=2)

    def set_many(self, items: Dict[str, Any]) -> None:
        # one atomic replace for the whole batch
        self.data.update(items)
        core.atomic_write_json(self.path, self.data, indent=2)

    def delete(self, key: str) -> None:
        super().delete(key)
        core.atomic_write_json(self.path, self.data, indent=2)


def open_store() -> KeyValueStore:
    if core.PERSISTENCE_BACKEND == "disk":
        return JsonFileStore(core.PROGRESS_FILE)
    return MemoryStore()


# ============================================================
# Records
# ============================================================
@dataclass(frozen=True)
class ProgressRecord:
    attempted: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempted if self.attempted else 0.0


@dataclass(frozen=True)
class QuizResult:
    title: str
    total: int
    correct: int
    ts: int


def _int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _flag(x: Any) -> bool:
    """Stored booleans may come back as strings ("false") from older saves."""
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        return x.strip().lower() in ("true", "1")
    if isinstance(x, int):
        return x == 1
    return False


def migrate_record(raw: Any) -> ProgressRecord:
    if not isinstance(raw, dict):
        return ProgressRecord()
    attempted = max(0, _int(raw.get("attempted")))
    correct = int(core.clamp(_int(raw.get("correct")), 0, attempted))
    return ProgressRecord(attempted=attempted, correct=correct)


def belongs_to_week(snapshot: Dict[str, Any], week: Optional[str]) -> bool:
    if not week:
        return True
    if snapshot.get("week_id") == week or snapshot.get("deck") == week:
        return True
    tags = snapshot.get("tags")
    if isinstance(tags, list) and week in tags:
        return True
    source = snapshot.get("source")
    return isinstance(source, str) and week in source


# ============================================================
# ProgressStore
# ============================================================
class ProgressStore:
    def __init__(self) -> None:
        self.subs: Dict[str, ProgressRecord] = {}
        self.quizzes: List[QuizResult] = []
        self.missed: Dict[str, Dict[str, Any]] = {}
        self.retested: Dict[str, Dict[str, Any]] = {}
        self.topic_unlocks: List[str] = []

        self.timer_enabled = False
        self.seconds_per_question = core.DEFAULT_SECONDS_PER_QUESTION
        self.explore = False
        self._difficulty_filter: List[str] = list(core.DIFFICULTIES)

    # ---------------- load / save ----------------
    @classmethod
    def load(cls, store: KeyValueStore) -> "ProgressStore":
        p = cls()

        stats = store.get(KEY_STATS, {}) or {}
        if not isinstance(stats, dict):
            stats = {}
        subs = stats.get("subs", {})
        if isinstance(subs, dict):
            p.subs = {str(k): migrate_record(v) for k, v in subs.items()}
        quizzes = stats.get("quizzes")
        for q in quizzes if isinstance(quizzes, list) else []:
            if isinstance(q, dict):
                p.quizzes.append(
                    QuizResult(
                        title=str(q.get("title", "") or ""),
                        total=max(0, _int(q.get("total"))),
                        correct=max(0, _int(q.get("correct"))),
                        ts=_int(q.get("ts")),
                    )
                )

        for attr, key in ((LEDGER_MISSED, KEY_MISSED), (LEDGER_RETESTED, KEY_RETESTED)):
            raw = store.get(key, {}) or {}
            if isinstance(raw, dict):
                setattr(p, attr, {str(k): dict(v) for k, v in raw.items() if isinstance(v, dict)})
        # a qid can only live in one ledger; the missed entry is the newer fact
        for qid in list(p.retested):
            if qid in p.missed:
                del p.retested[qid]

        unlocks = store.get(KEY_UNLOCKS, []) or []
        if isinstance(unlocks, list):
            p.topic_unlocks = list(dict.fromkeys(str(u) for u in unlocks if u))

        p.timer_enabled = _flag(store.get(KEY_TIMER_ON, False))
        p.set_seconds_per_question(store.get(KEY_SEC_PER_Q, core.DEFAULT_SECONDS_PER_QUESTION))
        p.explore = _flag(store.get(KEY_EXPLORE, False))
        diff = store.get(KEY_DIFFSET, list(core.DIFFICULTIES))
        p.difficulty_filter = diff if isinstance(diff, list) else []
        return p

    def stats_payload(self) -> Dict[str, Any]:
        return {
            "subs": {k: {"attempted": r.attempted, "correct": r.correct} for k, r in self.subs.items()},
            "quizzes": [
                {"title": q.title, "total": q.total, "correct": q.correct, "ts": q.ts} for q in self.quizzes
            ],
        }

    def save(self, store: KeyValueStore) -> None:
        store.set_many(
            {
                KEY_STATS: self.stats_payload(),
                KEY_MISSED: self.missed,
                KEY_RETESTED: self.retested,
                KEY_UNLOCKS: self.topic_unlocks,
                KEY_TIMER_ON: self.timer_enabled,
                KEY_SEC_PER_Q: self.seconds_per_question,
                KEY_DIFFSET: self.difficulty_filter,
                KEY_EXPLORE: self.explore,
            }
        )

    # ---------------- settings ----------------
    @property
    def difficulty_filter(self) -> List[str]:
        return list(self._difficulty_filter)

    @difficulty_filter.setter
    def difficulty_filter(self, values: List[str]) -> None:
        chosen = [d for d in core.DIFFICULTIES if d in {str(v).strip().lower() for v in values or []}]
        self._difficulty_filter = chosen or list(core.DIFFICULTIES)

    def set_seconds_per_question(self, sec: Any) -> None:
        s = _int(sec, core.DEFAULT_SECONDS_PER_QUESTION)
        self.seconds_per_question = int(core.clamp(s, core.MIN_SECONDS_PER_QUESTION, core.MAX_SECONDS_PER_QUESTION))

    # ---------------- per-subtopic stats ----------------
    @staticmethod
    def stats_key(topic: str, subtopic: str) -> str:
        return f"{topic}|{subtopic}"

    def record_attempt(self, topic: str, subtopic: str, correct: bool) -> ProgressRecord:
        k = self.stats_key(topic, subtopic)
        rec = self.subs.get(k, ProgressRecord())
        new = ProgressRecord(attempted=rec.attempted + 1, correct=rec.correct + (1 if correct else 0))
        self.subs[k] = new
        return new

    def sub_stats(self, topic: str, subtopic: str) -> ProgressRecord:
        return self.subs.get(self.stats_key(topic, subtopic), ProgressRecord())

    def sub_accuracy(self, topic: str, subtopic: str) -> float:
        return self.sub_stats(topic, subtopic).accuracy

    def topic_accuracy(self, topic: str, subtopics: List[str]) -> Tuple[float, int, int]:
        """(pct, correct, attempted) summed over the given subtopics."""
        correct = 0
        total = 0
        for s in subtopics:
            rec = self.sub_stats(topic, s)
            correct += rec.correct
            total += rec.attempted
        return (correct / total if total else 0.0), correct, total

    def record_quiz(self, title: str, total: int, correct: int, ts: Optional[int] = None) -> QuizResult:
        res = QuizResult(title=str(title), total=int(total), correct=int(correct), ts=ts if ts is not None else core.now_ms())
        self.quizzes.append(res)
        return res

    # ---------------- ledgers ----------------
    def mark_missed(self, question: Question, week_stamp: str) -> None:
        snap = question.to_dict()
        snap["week_id"] = week_stamp
        self.retested.pop(question.qid, None)
        self.missed[question.qid] = snap

    def mark_retested(self, qid: str, now: Optional[int] = None) -> bool:
        prev = self.missed.get(qid)
        if prev is None:
            return False
        moved = dict(prev)
        moved["retested_at"] = now if now is not None else core.now_ms()
        self.retested[qid] = moved
        del self.missed[qid]
        return True

    def apply_grade(self, question: Question, correct: bool, week_stamp: str) -> str:
        """
        Wrong -> (re)enter missed. Right + currently missed -> move to retested.
        Returns the ledger that changed ("" when none did).
        """
        if not correct:
            self.mark_missed(question, week_stamp)
            return LEDGER_MISSED
        if self.mark_retested(question.qid):
            return LEDGER_RETESTED
        return ""

    def ledger(self, name: str) -> Dict[str, Dict[str, Any]]:
        if name == LEDGER_MISSED:
            return self.missed
        if name == LEDGER_RETESTED:
            return self.retested
        raise ValueError(f"Unknown ledger: {name!r}")

    def clear(self, ledger_name: str) -> None:
        self.ledger(ledger_name).clear()

    def ledger_groups(self, name: str, week: Optional[str] = None) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        """topic -> subtopic -> snapshots, for the review screen."""
        groups: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for snap in self.ledger(name).values():
            if not belongs_to_week(snap, week):
                continue
            t = snap.get("topic") or "Misc."
            s = snap.get("subtopic") or core.GENERAL_SUBTOPIC
            groups.setdefault(t, {}).setdefault(s, []).append(snap)
        return groups

    # ---------------- unlocks ----------------
    def unlock(self, topic: str) -> bool:
        if topic in self.topic_unlocks:
            return False
        self.topic_unlocks.append(topic)
        return True


# ============================================================
# UnlockController
# ============================================================
class UnlockController:
    """
    Battle streak gating. A streak counts consecutive correct answers per
    topic; reaching UNLOCK_STREAK unlocks the next canonical topic.
    """

    def __init__(
        self,
        progress: ProgressStore,
        topics: List[str],
        resolver: Optional[TopicAliasResolver] = None,
    ):
        self.progress = progress
        self.topics = list(topics)
        self.resolver = resolver or TopicAliasResolver()
        self.streaks: Dict[str, int] = {}
        self.ensure_first_unlocked()

    def ensure_first_unlocked(self) -> None:
        if self.topics and not self._in_unlocks(self.topics[0]):
            self.progress.unlock(self.topics[0])

    def _in_unlocks(self, topic: str) -> bool:
        key = self.resolver.resolve(topic)
        return any(self.resolver.resolve(u) == key for u in self.progress.topic_unlocks)

    def _index(self, topic: str) -> int:
        key = self.resolver.resolve(topic)
        for i, t in enumerate(self.topics):
            if self.resolver.resolve(t) == key:
                return i
        return -1

    def is_unlocked(self, topic: str, explore: Optional[bool] = None) -> bool:
        if self.progress.explore if explore is None else explore:
            return True
        if self.topics and self._index(topic) == 0:
            return True
        return self._in_unlocks(topic)

    def applies(self, mode: str, subtopic: Optional[str], explore: Optional[bool] = None) -> bool:
        explore = self.progress.explore if explore is None else explore
        return mode == "battle" and not subtopic and not explore

    def streak(self, topic: str) -> int:
        return self.streaks.get(self.resolver.resolve(topic), 0)

    def on_graded(self, topic: str, correct: bool) -> Optional[str]:
        """Returns the newly unlocked topic name, if this answer unlocked one."""
        key = self.resolver.resolve(topic)
        if not correct:
            self.streaks[key] = 0
            return None

        st = self.streaks.get(key, 0) + 1
        if st < core.UNLOCK_STREAK:
            self.streaks[key] = st
            return None

        self.streaks[key] = 0
        idx = self._index(topic)
        if idx < 0 or idx + 1 >= len(self.topics):
            return None
        nxt = self.topics[idx + 1]
        if self._in_unlocks(nxt):
            return None
        self.progress.unlock(nxt)
        logger.info(f"Unlocked topic '{nxt}' after {core.UNLOCK_STREAK} correct in a row on '{topic}'")
        return nxt

    def reset_streaks(self) -> None:
        self.streaks.clear()


# ============================================================
# Backup
# ============================================================
def write_backup(progress: ProgressStore) -> Path:
    if core.PERSISTENCE_BACKEND != "disk":
        return Path("(session-only: no backup written)")

    core.BACKUP_DIR.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    out = core.BACKUP_DIR / f"backup_{stamp}.json"
    store = MemoryStore()
    progress.save(store)
    payload = {
        "ts": core.now_ts(),
        "day": core.today_ymd(),
        "progress": store.snapshot(),
    }
    core.atomic_write_json(out, payload, indent=2)
    return out
