from __future__ import annotations

"""
quiz_engine.py — quiz sessions over a QuestionIndex

QuizEngine owns at most one QuizSession at a time:

  start() -> live --next() past last--> review --submit()--> (session destroyed)
               ^                          |
               +------- revisit(i) -------+

Grading (lock_in / timeout / submit) writes straight into ProgressStore and,
for whole-topic battles, feeds the UnlockController. Operations that make no
sense in the current state are ignored and return None/False.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import medquest_core as core
from content_schema import POOL_LONG, POOL_REGULAR, Question, StudyContent, normalize_question
from medquest_core import norm
from progress_store import ProgressStore, QuizResult, UnlockController

logger = logging.getLogger(__name__)

MODE_BATTLE = "battle"
MODE_CUSTOM = "custom"

STAGE_LIVE = "live"
STAGE_REVIEW = "review"


# ============================================================
# Countdown
# ============================================================
class QuestionCountdown:
    """Per-question deadline against an injectable clock (seconds)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.deadline: Optional[float] = None

    def arm(self, seconds: float) -> None:
        self.deadline = self.clock() + float(seconds)

    def cancel(self) -> None:
        self.deadline = None

    @property
    def armed(self) -> bool:
        return self.deadline is not None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    def expired(self) -> bool:
        return self.deadline is not None and self.clock() >= self.deadline


# ============================================================
# Session model
# ============================================================
@dataclass
class AnswerSlot:
    picked: Optional[str] = None
    locked: bool = False
    correct: Optional[bool] = None


@dataclass
class GradeResult:
    qid: str
    correct: bool
    picked: Optional[str]
    answer: str
    answer_text: str
    explanation: str = ""
    ledger: str = ""
    unlocked: Optional[str] = None


@dataclass
class QuizSession:
    title: str
    items: List[Question]
    mode: str = MODE_CUSTOM
    topic: str = ""
    subtopic: Optional[str] = None
    index: int = 0
    stage: str = STAGE_LIVE
    answers: List[AnswerSlot] = field(default_factory=list)
    correct_count: int = 0
    timer_enabled: bool = False
    seconds_per_question: int = core.DEFAULT_SECONDS_PER_QUESTION
    qids: List[str] = field(default_factory=list)

    def current(self) -> Optional[Question]:
        if 0 <= self.index < len(self.items):
            return self.items[self.index]
        return None

    def slot(self, i: Optional[int] = None) -> AnswerSlot:
        return self.answers[self.index if i is None else i]

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def locked_count(self) -> int:
        return sum(1 for a in self.answers if a.locked)

    @property
    def is_last(self) -> bool:
        return self.index >= len(self.items) - 1


# ============================================================
# Pools
# ============================================================
@dataclass
class SubtopicView:
    name: str
    content: str = ""
    slide_reference: str = ""
    regular_count: int = 0
    long_count: int = 0


def dedup_by_qid(questions: Iterable[Question]) -> List[Question]:
    seen = set()
    out: List[Question] = []
    for q in questions:
        if q.qid in seen:
            continue
        seen.add(q.qid)
        out.append(q)
    return out


def filter_difficulty(questions: Iterable[Question], difficulties: Optional[Iterable[str]]) -> List[Question]:
    chosen = {d for d in (difficulties or []) if d}
    if not chosen:
        return list(questions)
    return [q for q in questions if q.difficulty in chosen]


def subtopics_for_display(content: StudyContent, topic: str) -> List[SubtopicView]:
    """Notes subtopics first, then bank-only subtopics, each with pool counts."""
    qi = content.questions
    notes_topic = content.notes.topic(topic)
    note_subs = {norm(s.name): s for s in (notes_topic.subtopics if notes_topic else [])}

    names: Dict[str, str] = {k: s.name for k, s in note_subs.items()}
    for pool in (POOL_REGULAR, POOL_LONG):
        for skey, qs in qi.subtopic_map(pool, topic).items():
            if skey in names:
                continue
            names[skey] = (qs[0].subtopic if qs else "") or skey

    out: List[SubtopicView] = []
    for skey, name in names.items():
        node = note_subs.get(skey)
        out.append(
            SubtopicView(
                name=name,
                content=node.content if node else "",
                slide_reference=node.slide_reference if node else "",
                regular_count=len(qi.questions(POOL_REGULAR, topic, name)),
                long_count=len(qi.questions(POOL_LONG, topic, name)),
            )
        )
    return out


def _first_nonempty(subs: Dict[str, List[Question]]) -> List[Question]:
    for qs in subs.values():
        if qs:
            return qs
    return []


def vignette_pool(
    content: StudyContent,
    topic: str,
    subtopic: Optional[str] = None,
    difficulties: Optional[Iterable[str]] = None,
) -> List[Question]:
    qi = content.questions
    if subtopic:
        found = qi.questions(POOL_LONG, topic, subtopic)
    else:
        found = []
        for s in subtopics_for_display(content, topic):
            found.extend(qi.questions(POOL_LONG, topic, s.name))
    return dedup_by_qid(filter_difficulty(found, difficulties or core.DIFFICULTIES))


def battle_pool(
    content: StudyContent,
    topic: str,
    subtopic: Optional[str] = None,
    difficulties: Optional[Iterable[str]] = None,
) -> List[Question]:
    """
    Regular questions for the topic (or one subtopic); per subtopic the long
    list stands in when the regular one is empty. If that is still empty:
    first non-empty regular subtopic, then vignettes, then first non-empty
    long subtopic.
    """
    qi = content.questions
    pool: List[Question] = []
    if subtopic:
        pool = qi.questions(POOL_REGULAR, topic, subtopic) or qi.questions(POOL_LONG, topic, subtopic)
    else:
        for s in subtopics_for_display(content, topic):
            pool.extend(qi.questions(POOL_REGULAR, topic, s.name) or qi.questions(POOL_LONG, topic, s.name))

    if not pool:
        pool = _first_nonempty(qi.subtopic_map(POOL_REGULAR, topic))
    if not pool:
        pool = vignette_pool(content, topic, subtopic, difficulties)
    if not pool:
        pool = _first_nonempty(qi.subtopic_map(POOL_LONG, topic))
    return dedup_by_qid(pool)


def retest_pool(snapshots: Iterable[Dict[str, Any]]) -> List[Question]:
    """Ledger snapshots back into Questions (skipping ones that no longer parse)."""
    out: List[Question] = []
    for snap in snapshots:
        try:
            out.append(normalize_question(snap))
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping unreadable ledger entry {snap.get('qid', '?') if isinstance(snap, dict) else snap}: {e}")
    return dedup_by_qid(out)


# ============================================================
# QuizEngine
# ============================================================
class QuizEngine:
    def __init__(
        self,
        progress: ProgressStore,
        unlocks: Optional[UnlockController] = None,
        *,
        week_stamp: str = "",
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.progress = progress
        self.unlocks = unlocks
        self.week_stamp = week_stamp
        self.rng = rng or random.Random()
        self.countdown = QuestionCountdown(clock)
        self.session: Optional[QuizSession] = None
        self.last_result: Optional[QuizResult] = None

    @property
    def active(self) -> bool:
        return self.session is not None

    # ---------------- lifecycle ----------------
    def start(
        self,
        pool: List[Question],
        n: int = core.BATTLE_LENGTH,
        mode: str = MODE_CUSTOM,
        *,
        title: str = "",
        topic: str = "",
        subtopic: Optional[str] = None,
        difficulties: Optional[Iterable[str]] = None,
    ) -> QuizSession:
        n = int(n)
        if n < 1:
            raise core.EmptyPoolError(f"Quiz length must be at least 1 (got {n}).")
        items = dedup_by_qid(filter_difficulty(pool or [], difficulties))
        if not items:
            raise core.EmptyPoolError(f"No questions for {title or topic or 'this selection'} yet.")

        self.rng.shuffle(items)
        items = items[: min(n, len(items))]

        self.session = QuizSession(
            title=title or topic,
            items=items,
            mode=mode,
            topic=topic or title,
            subtopic=subtopic or None,
            answers=[AnswerSlot() for _ in items],
            timer_enabled=self.progress.timer_enabled,
            seconds_per_question=self.progress.seconds_per_question,
            qids=[q.qid for q in items],
        )
        self.last_result = None
        self._rearm()
        logger.info(f"Started {mode} quiz '{self.session.title}' with {len(items)} questions")
        return self.session

    def abandon(self) -> bool:
        if self.session is None:
            return False
        logger.info(f"Abandoned quiz '{self.session.title}' ({self.session.locked_count}/{self.session.total} locked)")
        self._end()
        return True

    def submit(self) -> Optional[QuizResult]:
        s = self.session
        if s is None or s.stage != STAGE_REVIEW:
            logger.debug("submit ignored: no session in review")
            return None

        for i, slot in enumerate(s.answers):
            if not slot.locked:
                self._grade(i, force_incorrect=True)

        result = self.progress.record_quiz(s.title, s.total, s.correct_count)
        logger.info(f"Submitted quiz '{s.title}': {s.correct_count}/{s.total}")
        self.last_result = result
        self._end()
        return result

    def _end(self) -> None:
        self.countdown.cancel()
        if self.unlocks is not None:
            self.unlocks.reset_streaks()
        self.session = None

    # ---------------- answering ----------------
    def _live_unlocked_slot(self) -> Optional[AnswerSlot]:
        s = self.session
        if s is None or s.stage != STAGE_LIVE:
            return None
        slot = s.slot()
        return None if slot.locked else slot

    def pick(self, letter: str) -> bool:
        slot = self._live_unlocked_slot()
        if slot is None:
            logger.debug("pick ignored: no unlocked live slot")
            return False
        slot.picked = str(letter)
        return True

    def lock_in(self) -> Optional[GradeResult]:
        slot = self._live_unlocked_slot()
        if slot is None or slot.picked is None:
            logger.debug("lock_in ignored: slot locked, not live, or nothing picked")
            return None
        return self._grade(self.session.index)

    def timeout(self) -> Optional[GradeResult]:
        if self._live_unlocked_slot() is None:
            return None
        return self._grade(self.session.index, force_incorrect=True)

    def tick(self) -> Optional[GradeResult]:
        """Call periodically; grades the current slot once its countdown has run out."""
        if self.session is None or not self.countdown.expired():
            return None
        self.countdown.cancel()
        return self.timeout()

    def remaining(self) -> Optional[float]:
        return self.countdown.remaining()

    def _grade(self, i: int, force_incorrect: bool = False) -> GradeResult:
        s = self.session
        q = s.items[i]
        slot = s.answers[i]
        correct = (not force_incorrect) and slot.picked is not None and slot.picked == q.answer

        self.progress.record_attempt(q.topic, q.subtopic, correct)

        unlocked = None
        if self.unlocks is not None and self.unlocks.applies(s.mode, s.subtopic):
            unlocked = self.unlocks.on_graded(s.topic, correct)

        ledger = self.progress.apply_grade(q, correct, self.week_stamp)

        slot.locked = True
        slot.correct = correct
        if correct:
            s.correct_count += 1
        if i == s.index:
            self.countdown.cancel()

        return GradeResult(
            qid=s.qids[i],
            correct=correct,
            picked=slot.picked,
            answer=q.answer,
            answer_text=q.answer_text(),
            explanation=q.explanation,
            ledger=ledger,
            unlocked=unlocked,
        )

    # ---------------- navigation ----------------
    def next(self) -> bool:
        s = self.session
        if s is None or s.stage != STAGE_LIVE:
            return False
        if s.index + 1 < s.total:
            s.index += 1
            self._rearm()
        else:
            s.stage = STAGE_REVIEW
            self.countdown.cancel()
        return True

    def prev(self) -> bool:
        s = self.session
        if s is None or s.stage != STAGE_LIVE or s.index <= 0:
            return False
        s.index -= 1
        self._rearm()
        return True

    def revisit(self, i: int) -> bool:
        s = self.session
        if s is None or s.stage != STAGE_REVIEW or not (0 <= i < s.total):
            return False
        s.stage = STAGE_LIVE
        s.index = i
        self._rearm()
        return True

    def _rearm(self) -> None:
        s = self.session
        if s is not None and s.stage == STAGE_LIVE and s.timer_enabled and not s.slot().locked:
            self.countdown.arm(s.seconds_per_question)
        else:
            self.countdown.cancel()
