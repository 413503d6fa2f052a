from __future__ import annotations

"""
content_schema.py — MedQuest content normalization

Turns the loosely-structured week files into one canonical model:
- TopicAliasResolver: join key between notes and question banks.
- normalize_question: any supported question encoding -> Question.
- assemble_document: one subtopic's structured note fields -> labelled text.
- parse_*_payload: explicit shape detection (one dataclass per shape).
- build_notes_index / build_question_index / unify_pools.

Structural problems in a record are logged + collected as issues and the
record is skipped; a bad file degrades to an empty index instead of raising.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from medquest_core import (
    GENERAL_SUBTOPIC,
    GENERAL_TOPIC,
    IMAGE_PUBLIC_PREFIX,
    IMAGE_SANDBOX_PREFIX,
    LONG_FORM_STEM_THRESHOLD,
    QID_STEM_CHARS,
    TOPIC_ALIASES,
    TOPIC_ORDER,
    first_nonblank,
    first_present,
    norm,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"

QB_TOPIC_KEYS = ["topic", "topic_name", "topic_title", "subject"]
QB_SUBTOPIC_KEYS = ["subtopic", "name", "title", "section"]

REGULAR_PROPS = ["questions", "regular_questions", "items"]
LONG_PROPS = ["long_questions", "long", "long_form_questions", "vignettes", "questions"]

POOL_REGULAR = "regular"
POOL_LONG = "long"


# ============================================================
# Topic aliasing + ordering
# ============================================================
class TopicAliasResolver:
    """Maps free-text topic names onto canonical index keys."""

    def __init__(self, aliases: Optional[Dict[str, str]] = None):
        table: Dict[str, str] = dict(TOPIC_ALIASES)
        table.update(aliases or {})
        self.aliases: Dict[str, str] = {}
        for raw, canonical in table.items():
            k = norm(raw)
            if k:
                self.aliases[k] = norm(canonical)

    def resolve(self, raw_name: Any) -> str:
        n = norm(raw_name)
        return self.aliases.get(n, n)


def order_topics(
    items: Iterable[T],
    name_of: Callable[[T], str] = str,
    priority: Optional[List[str]] = None,
) -> List[T]:
    """
    "General" first, then names from `priority` in list order, then the rest
    alphabetically (case-insensitive).
    """
    prio = TOPIC_ORDER if priority is None else priority
    rank = {norm(n): i for i, n in enumerate(prio)}

    def sort_key(it: T) -> Tuple[int, int, str, str]:
        name = str(name_of(it) or "")
        n = norm(name)
        if n == norm(GENERAL_TOPIC):
            return (0, 0, "", "")
        if n in rank:
            return (1, rank[n], "", "")
        return (2, 0, name.lower(), name)

    return sorted(items, key=sort_key)


# ============================================================
# Question model
# ============================================================
def question_qid(topic: Any, subtopic: Any, stem: Any) -> str:
    return f"{norm(topic)}__{norm(subtopic)}__{norm(stem)[:QID_STEM_CHARS]}"


@dataclass
class Question:
    id: str
    topic: str
    subtopic: str
    stem: str
    options: Dict[str, str]
    answer: str
    difficulty: str = "medium"
    long_form: bool = False
    explanation: str = ""
    image: Optional[str] = None
    slide_reference: str = ""
    resolution_miss: bool = False

    @property
    def qid(self) -> str:
        return question_qid(self.topic, self.subtopic, self.stem)

    def tagged(self, long_form: bool) -> "Question":
        return replace(self, long_form=bool(long_form), options=dict(self.options))

    def answer_text(self) -> str:
        return self.options.get(self.answer, "")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["qid"] = self.qid
        return d


# ============================================================
# QuestionNormalizer
# ============================================================
def letter_options(raw: Any) -> Dict[str, str]:
    """
    Accepts:
      - {"A": "...", "B": "..."}      -> passed through (values stringified)
      - ["...", "..."]                -> lettered A, B, ... in order
      - [{"text"|"label"|"value": ...}]
    """
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if not isinstance(raw, list):
        return {}

    if len(raw) > len(LETTERS):
        logger.warning(f"Option list has {len(raw)} entries; keeping the first {len(LETTERS)}")

    out: Dict[str, str] = {}
    for letter, it in zip(LETTERS, raw):
        if isinstance(it, dict):
            txt = first_present(it, ["text", "label", "value"], "")
        else:
            txt = it
        out[letter] = "" if txt is None else str(txt)
    return out


def resolve_answer(raw_answer: Any, options: Dict[str, str]) -> Tuple[str, bool]:
    """Returns (answer, resolved). Unresolvable answers are kept as given."""
    if raw_answer is None:
        return "", False
    answer = str(raw_answer)
    if answer in options:
        return answer, True

    a_norm = norm(answer)
    if a_norm:
        for letter, txt in options.items():
            if norm(txt) == a_norm:
                return letter, True
    return answer, False


def classify_difficulty(raw: Dict[str, Any]) -> str:
    d = first_nonblank(raw, ["difficulty", "level", "Difficulty"], "")
    s = str(d).strip().lower()
    if s.startswith("eas") or s in ("1", "low"):
        return "easy"
    if s.startswith("har") or s in ("3", "high"):
        return "hard"
    return "medium"


def is_long_form(raw: Dict[str, Any], stem: str) -> bool:
    if raw.get("long_form") or raw.get("vignette"):
        return True
    return len(stem) > LONG_FORM_STEM_THRESHOLD


def map_image(path: Any) -> Optional[str]:
    if path is None:
        return None
    p = str(path).strip()
    if not p:
        return None
    return p.replace(IMAGE_SANDBOX_PREFIX, IMAGE_PUBLIC_PREFIX)


def _explanation(raw: Dict[str, Any]) -> str:
    e = first_nonblank(raw, ["explanation", "expl"], None)
    if e is not None:
        return str(e)
    rationales = raw.get("rationales")
    if rationales:
        return json.dumps(rationales, ensure_ascii=False)
    return ""


def normalize_question(
    raw: Dict[str, Any],
    topic: str = "",
    subtopic: str = "",
    *,
    fallback_id: str = "",
) -> Question:
    """
    One raw question record (any supported encoding) -> Question.

    Pure: depends only on `raw` and the caller-supplied topic/subtopic.
    Running it on its own output (Question.to_dict()) gives the same Question.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Question record must be an object, got {type(raw).__name__}")

    stem = str(first_present(raw, ["stem", "question", "prompt"], "") or "")

    opts_raw = raw.get("options")
    if opts_raw is None or (isinstance(opts_raw, list) and not opts_raw and raw.get("choices")):
        opts_raw = raw.get("choices")
    options = letter_options(opts_raw)

    answer, resolved = resolve_answer(first_present(raw, ["answer", "correct", "correct_answer"]), options)
    q_topic = str(topic or raw.get("topic") or "")
    q_sub = str(subtopic or raw.get("subtopic") or "")
    qid = str(first_nonblank(raw, ["id"], "") or fallback_id)

    if not resolved:
        logger.warning(
            f"Answer {answer!r} matches no option for question {qid or question_qid(q_topic, q_sub, stem)}"
        )

    return Question(
        id=qid,
        topic=q_topic,
        subtopic=q_sub,
        stem=stem,
        options=options,
        answer=answer,
        difficulty=classify_difficulty(raw),
        long_form=is_long_form(raw, stem),
        explanation=_explanation(raw),
        image=map_image(first_present(raw, ["image", "img"])),
        slide_reference=str(first_present(raw, ["slide_reference", "slide_ref"], "") or ""),
        resolution_miss=not resolved,
    )


# ============================================================
# ContentAssembler
# ============================================================
LABEL_ELI5 = "ELI5: "
LABEL_MNEMONIC = "Mnemonic: "
LABEL_CONNECTIONS = "Connections:\n"


def _connection_line(c: Any) -> str:
    if not isinstance(c, dict):
        return f"• {c}"
    line = f"• {c.get('topic', '')}"
    if c.get("subtopic"):
        line += f" — {c['subtopic']}"
    if c.get("reason"):
        line += f" ({c['reason']})"
    return line


def assemble_document(raw: Dict[str, Any]) -> str:
    """
    Segment order is fixed:
      primary text (or high-yield bullets) / ELI5 / Mnemonic / Connections
    """
    segments: List[str] = []

    primary = first_present(raw, ["content", "notes", "description"], "")
    primary = "" if primary is None else str(primary)
    if not primary and isinstance(raw.get("high_yield"), list):
        primary = "\n".join(f"• {x}" for x in raw["high_yield"])
    if primary:
        segments.append(primary)

    eli5 = first_nonblank(raw, ["eli5", "explain_like_i_am_stupid"], "")
    if eli5:
        segments.append(LABEL_ELI5 + str(eli5))

    mnemonic = raw.get("mnemonic")
    if mnemonic:
        segments.append(LABEL_MNEMONIC + str(mnemonic))

    connections = raw.get("connections")
    if isinstance(connections, list) and connections:
        segments.append(LABEL_CONNECTIONS + "\n".join(_connection_line(c) for c in connections))

    return "\n\n".join(segments)


def split_document(text: str) -> List[Tuple[str, str]]:
    """Labelled text -> [(label, body)] with label in content/eli5/mnemonic/connections."""
    out: List[Tuple[str, str]] = []
    for block in str(text or "").split("\n\n"):
        if block.startswith(LABEL_ELI5):
            out.append(("eli5", block[len(LABEL_ELI5):]))
        elif block.startswith(LABEL_MNEMONIC):
            out.append(("mnemonic", block[len(LABEL_MNEMONIC):]))
        elif block.startswith(LABEL_CONNECTIONS):
            out.append(("connections", block[len(LABEL_CONNECTIONS):]))
        elif out:
            label, body = out[-1]
            out[-1] = (label, f"{body}\n\n{block}")
        else:
            out.append(("content", block))
    return out


# ============================================================
# Payload shapes (tagged variants)
# ============================================================
@dataclass
class LectureTreeNotes:
    lectures: List[Dict[str, Any]]


@dataclass
class TopicListNotes:
    lectures: List[Dict[str, Any]]


@dataclass
class FlatTextNotes:
    text: str


@dataclass
class UnknownNotes:
    reason: str


NotesPayload = Union[LectureTreeNotes, TopicListNotes, FlatTextNotes, UnknownNotes]


@dataclass
class FlatQuestionBank:
    questions: List[Any]


@dataclass
class LectureTreeBank:
    lectures: List[Dict[str, Any]]


@dataclass
class NestedDictBank:
    topics: Dict[str, Any]


@dataclass
class UnknownBank:
    reason: str


QuestionBankPayload = Union[FlatQuestionBank, LectureTreeBank, NestedDictBank, UnknownBank]


def _dicts(xs: List[Any]) -> List[Dict[str, Any]]:
    return [x for x in xs if isinstance(x, dict)]


NOTES_SHAPES: List[Tuple[Callable[[Dict[str, Any]], bool], Callable[[Dict[str, Any]], NotesPayload]]] = [
    (
        lambda d: isinstance(d.get("lectures"), list),
        lambda d: LectureTreeNotes(_dicts(d["lectures"])),
    ),
    (
        lambda d: isinstance(d.get("topics"), list),
        lambda d: TopicListNotes(
            [
                {
                    "topic": first_present(t, ["topic_title", "topic", "name"]),
                    "subtopics": t.get("subtopics") or [],
                }
                for t in _dicts(d["topics"])
            ]
        ),
    ),
    (
        lambda d: isinstance(d.get("paragraphs"), list),
        lambda d: FlatTextNotes("\n\n".join(str(p) for p in d["paragraphs"] if p is not None)),
    ),
    (
        lambda d: isinstance(d.get("content"), str),
        lambda d: FlatTextNotes(d["content"]),
    ),
]


def parse_notes_payload(payload: Any) -> NotesPayload:
    if not isinstance(payload, dict):
        return UnknownNotes(f"notes payload is {type(payload).__name__}, expected an object")
    for matches, build in NOTES_SHAPES:
        if matches(payload):
            return build(payload)
    return UnknownNotes(f"no known notes shape in keys {sorted(payload.keys())[:8]}")


def _flatten_lectures(lectures: List[Any]) -> List[Dict[str, Any]]:
    # { lectures: [ { lectures: [...] }, ... ] } -> one level down
    lecs = _dicts(lectures)
    if any(isinstance(x.get("lectures"), list) for x in lecs):
        flat: List[Dict[str, Any]] = []
        for x in lecs:
            if isinstance(x.get("lectures"), list):
                flat.extend(_dicts(x["lectures"]))
            else:
                flat.append(x)
        return flat
    return lecs


BANK_SHAPES: List[Tuple[Callable[[Dict[str, Any]], bool], Callable[[Dict[str, Any]], QuestionBankPayload]]] = [
    (
        lambda d: isinstance(d.get("questions"), list),
        lambda d: FlatQuestionBank(list(d["questions"])),
    ),
    (
        lambda d: isinstance(d.get("lectures"), list),
        lambda d: LectureTreeBank(_flatten_lectures(d["lectures"])),
    ),
    (
        lambda d: "questions" not in d and "lectures" not in d,
        lambda d: NestedDictBank(dict(d)),
    ),
]


def parse_question_bank_payload(payload: Any) -> QuestionBankPayload:
    if not isinstance(payload, dict):
        return UnknownBank(f"question bank is {type(payload).__name__}, expected an object")
    for matches, build in BANK_SHAPES:
        if matches(payload):
            return build(payload)
    return UnknownBank("questions/lectures present but not lists")


# ============================================================
# NotesIndex
# ============================================================
@dataclass
class Subtopic:
    name: str
    content: str = ""
    slide_reference: str = ""
    clinical_pearl: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class Topic:
    name: str
    key: str
    subtopics: List[Subtopic] = field(default_factory=list)


@dataclass
class NotesIndex:
    topics: List[Topic] = field(default_factory=list)
    lookup: Dict[Tuple[str, str], Subtopic] = field(default_factory=dict)
    resolver: TopicAliasResolver = field(default_factory=TopicAliasResolver, repr=False)

    def topic_names(self) -> List[str]:
        return [t.name for t in self.topics]

    def topic(self, name: str) -> Optional[Topic]:
        key = self.resolver.resolve(name)
        for t in self.topics:
            if t.key == key:
                return t
        return None

    def subtopic(self, topic: str, subtopic: str) -> Optional[Subtopic]:
        return self.lookup.get((self.resolver.resolve(topic), norm(subtopic)))


def _slide_reference(raw: Dict[str, Any]) -> str:
    ref = first_present(raw, ["slide_reference", "slide_ref"])
    if ref is None and isinstance(raw.get("slides"), list):
        ref = ", ".join(str(s) for s in raw["slides"])
    return "" if ref is None else str(ref)


def _notes_lectures(shape: NotesPayload) -> List[Dict[str, Any]]:
    if isinstance(shape, (LectureTreeNotes, TopicListNotes)):
        return shape.lectures
    if isinstance(shape, FlatTextNotes):
        return [{"topic": GENERAL_TOPIC, "subtopics": [{"name": GENERAL_SUBTOPIC, "content": shape.text}]}]
    return []


def build_notes_index(
    payload: Any,
    resolver: Optional[TopicAliasResolver] = None,
    issues: Optional[List[str]] = None,
) -> NotesIndex:
    resolver = resolver or TopicAliasResolver()
    issues = issues if issues is not None else []

    shape = parse_notes_payload(payload)
    if isinstance(shape, UnknownNotes):
        logger.warning(f"Notes: {shape.reason}; using an empty index")
        issues.append(f"Notes: {shape.reason}")

    by_key: Dict[str, Topic] = {}
    sub_maps: Dict[str, Dict[str, Subtopic]] = {}

    for lec in _notes_lectures(shape):
        topic_name = str(first_present(lec, ["topic", "topic_title", "name"], "Untitled Topic"))
        tkey = resolver.resolve(topic_name)
        if tkey not in by_key:
            by_key[tkey] = Topic(name=topic_name, key=tkey)
            sub_maps[tkey] = {}
        subs = sub_maps[tkey]

        raw_subs = lec.get("subtopics") or []
        if not isinstance(raw_subs, list):
            issues.append(f"Notes topic '{topic_name}': subtopics is not a list")
            continue

        for raw in raw_subs:
            if not isinstance(raw, dict):
                issues.append(f"Notes topic '{topic_name}': skipped non-object subtopic")
                continue
            sub_name = str(first_present(raw, ["name", "subtopic", "title"], "Untitled Subtopic"))
            subs[norm(sub_name)] = Subtopic(
                name=sub_name,
                content=assemble_document(raw),
                slide_reference=_slide_reference(raw),
                clinical_pearl=str(raw.get("clinical_pearl") or ""),
                raw=raw,
            )

    index = NotesIndex(resolver=resolver)
    for tkey, topic in by_key.items():
        topic.subtopics = list(sub_maps[tkey].values())
        for skey, sub in sub_maps[tkey].items():
            index.lookup[(tkey, skey)] = sub
    index.topics = order_topics(by_key.values(), name_of=lambda t: t.name)
    return index


# ============================================================
# QuestionIndex
# ============================================================
Pool = Dict[str, Dict[str, List[Question]]]


@dataclass
class QuestionIndex:
    regular: Pool = field(default_factory=dict)
    long_form: Pool = field(default_factory=dict)
    flat: List[Question] = field(default_factory=list)
    resolver: TopicAliasResolver = field(default_factory=TopicAliasResolver, repr=False)

    def pool(self, name: str) -> Pool:
        return self.long_form if name == POOL_LONG else self.regular

    def questions(self, pool: str, topic: str, subtopic: str) -> List[Question]:
        return self.pool(pool).get(self.resolver.resolve(topic), {}).get(norm(subtopic), [])

    def subtopic_map(self, pool: str, topic: str) -> Dict[str, List[Question]]:
        return self.pool(pool).get(self.resolver.resolve(topic), {})

    def count(self, pool: str = POOL_REGULAR) -> int:
        return sum(len(qs) for subs in self.pool(pool).values() for qs in subs.values())


def _push(pool: Pool, tkey: str, skey: str, q: Question) -> None:
    pool.setdefault(tkey, {}).setdefault(skey, []).append(q)


def _dedup(questions: Iterable[Question]) -> List[Question]:
    seen = set()
    out: List[Question] = []
    for q in questions:
        if q.qid in seen:
            continue
        seen.add(q.qid)
        out.append(q)
    return out


def _safe_normalize(
    raw: Any, topic: str, subtopic: str, fallback_id: str, issues: List[str]
) -> Optional[Question]:
    try:
        q = normalize_question(raw, topic, subtopic, fallback_id=fallback_id)
    except (ValueError, TypeError) as e:
        logger.warning(f"Skipping question {fallback_id} in {topic} / {subtopic}: {e}")
        issues.append(f"Skipped question {fallback_id} ({topic} / {subtopic}): {e}")
        return None
    if q.resolution_miss:
        issues.append(f"Answer {q.answer!r} matches no option: {q.id or q.qid}")
    return q


def _index_flat(shape: FlatQuestionBank, resolver: TopicAliasResolver, issues: List[str]) -> QuestionIndex:
    regular: Pool = {}
    long_form: Pool = {}
    flat: List[Question] = []
    names: Dict[str, str] = {}

    for i, raw in enumerate(shape.questions):
        if not isinstance(raw, dict):
            issues.append(f"Skipped question #{i + 1}: not an object")
            continue
        t_raw = str(first_nonblank(raw, QB_TOPIC_KEYS, GENERAL_TOPIC))
        s_raw = str(first_nonblank(raw, QB_SUBTOPIC_KEYS, GENERAL_SUBTOPIC))
        tkey = resolver.resolve(t_raw)
        topic = names.get(tkey, t_raw)

        q = _safe_normalize(raw, topic, s_raw, f"Q{i + 1}", issues)
        if q is None:
            continue
        names.setdefault(tkey, topic)
        skey = norm(s_raw)
        _push(regular, tkey, skey, q.tagged(False))
        _push(long_form, tkey, skey, q.tagged(True))
        flat.append(q)

    ordered = order_topics(names.keys(), name_of=lambda k: names[k], priority=[])
    return QuestionIndex(
        regular={k: regular[k] for k in ordered},
        long_form={k: long_form[k] for k in ordered},
        flat=_dedup(flat),
        resolver=resolver,
    )


def _first_list(obj: Dict[str, Any], props: List[str]) -> List[Any]:
    for p in props:
        v = obj.get(p)
        if isinstance(v, list) and v:
            return v
    return []


def _index_lectures(shape: LectureTreeBank, resolver: TopicAliasResolver, issues: List[str]) -> QuestionIndex:
    index = QuestionIndex(resolver=resolver)

    for lec in shape.lectures:
        topic_name = str(first_present(lec, ["topic", "topic_title", "name"], "") or "")
        tkey = resolver.resolve(topic_name)
        index.regular.setdefault(tkey, {})
        index.long_form.setdefault(tkey, {})

        subs = lec.get("subtopics") or []
        if not isinstance(subs, list):
            issues.append(f"Question bank topic '{topic_name}': subtopics is not a list")
            continue

        for st in _dicts(subs):
            sub_name = str(first_present(st, ["name", "subtopic", "title"], "") or "")
            skey = norm(sub_name)
            for pool, props in ((index.regular, REGULAR_PROPS), (index.long_form, LONG_PROPS)):
                qs: List[Question] = []
                for j, raw in enumerate(_first_list(st, props)):
                    q = _safe_normalize(raw, topic_name, sub_name, f"{skey or 'q'}_{j + 1}", issues)
                    if q is not None:
                        qs.append(q)
                pool[tkey][skey] = qs

    index.flat = _dedup(
        q for pool in (index.regular, index.long_form) for subs in pool.values() for qs in subs.values() for q in qs
    )
    return index


def _index_nested(shape: NestedDictBank, resolver: TopicAliasResolver, issues: List[str]) -> QuestionIndex:
    index = QuestionIndex(resolver=resolver)

    for topic_name, subs in shape.topics.items():
        if not isinstance(subs, dict):
            issues.append(f"Question bank topic '{topic_name}': expected subtopic → questions mapping")
            continue
        tkey = resolver.resolve(topic_name)
        for sub_name, raw_qs in subs.items():
            skey = norm(sub_name)
            qs: List[Question] = []
            if isinstance(raw_qs, list):
                for j, raw in enumerate(raw_qs):
                    q = _safe_normalize(raw, str(topic_name), str(sub_name), f"{skey or 'q'}_{j + 1}", issues)
                    if q is not None:
                        qs.append(q)
            else:
                issues.append(f"Question bank '{topic_name} / {sub_name}': questions is not a list")
            index.regular.setdefault(tkey, {})[skey] = qs
            index.long_form.setdefault(tkey, {})[skey] = list(qs)
            index.flat.extend(qs)

    index.flat = _dedup(index.flat)
    return index


def build_question_index(
    payload: Any,
    resolver: Optional[TopicAliasResolver] = None,
    issues: Optional[List[str]] = None,
) -> QuestionIndex:
    resolver = resolver or TopicAliasResolver()
    issues = issues if issues is not None else []

    shape = parse_question_bank_payload(payload)
    if isinstance(shape, FlatQuestionBank):
        return _index_flat(shape, resolver, issues)
    if isinstance(shape, LectureTreeBank):
        return _index_lectures(shape, resolver, issues)
    if isinstance(shape, NestedDictBank):
        return _index_nested(shape, resolver, issues)

    logger.warning(f"Question bank: {shape.reason}; using an empty index")
    issues.append(f"Question bank: {shape.reason}")
    return QuestionIndex(resolver=resolver)


def unify_pools(index: QuestionIndex) -> QuestionIndex:
    """
    Regular + long-form lists concatenated per subtopic (no dedup) and the
    same list exposed under both pools.
    """
    unified: Pool = {}
    for pool in (index.regular, index.long_form):
        for tkey in pool:
            unified.setdefault(tkey, {})

    for tkey, subs in unified.items():
        reg = index.regular.get(tkey, {})
        lng = index.long_form.get(tkey, {})
        for skey in list(reg.keys()) + [k for k in lng.keys() if k not in reg]:
            subs[skey] = list(reg.get(skey, [])) + list(lng.get(skey, []))

    return QuestionIndex(regular=unified, long_form=unified, flat=list(index.flat), resolver=index.resolver)


def combine_indices(regular: QuestionIndex, long_form: QuestionIndex) -> QuestionIndex:
    """Regular pool from one bank, long-form pool from another."""
    return QuestionIndex(
        regular=regular.regular,
        long_form=long_form.long_form,
        flat=_dedup(list(regular.flat) + list(long_form.flat)),
        resolver=regular.resolver,
    )


# ============================================================
# Week content
# ============================================================
@dataclass
class StudyContent:
    notes: NotesIndex
    questions: QuestionIndex
    issues: List[str] = field(default_factory=list)

    def canonical_topics(self) -> List[str]:
        return self.notes.topic_names()


def build_study_content(
    notes_payload: Any,
    regular_payload: Any,
    long_payload: Any = None,
    *,
    resolver: Optional[TopicAliasResolver] = None,
    unify: bool = False,
) -> StudyContent:
    resolver = resolver or TopicAliasResolver()
    issues: List[str] = []

    notes = build_notes_index(notes_payload, resolver, issues)
    questions = build_question_index(regular_payload, resolver, issues)
    if long_payload is not None and long_payload is not regular_payload:
        questions = combine_indices(questions, build_question_index(long_payload, resolver, issues))
    if unify:
        questions = unify_pools(questions)

    logger.info(
        f"Built content: {len(notes.topics)} topics, {questions.count(POOL_REGULAR)} regular / "
        f"{questions.count(POOL_LONG)} long-form questions, {len(issues)} issues"
    )
    return StudyContent(notes=notes, questions=questions, issues=issues)


def content_health_report(content: StudyContent) -> str:
    lines: List[str] = []
    lines.append(f"Topics: {len(content.notes.topics)} | Subtopics: {len(content.notes.lookup)}")
    lines.append(
        f"Questions: {len(content.questions.flat)} unique | "
        f"regular {content.questions.count(POOL_REGULAR)} | long-form {content.questions.count(POOL_LONG)}"
    )
    misses = [q for q in content.questions.flat if q.resolution_miss]
    if misses:
        lines.append(f"Unresolved answer keys: {len(misses)}")

    if content.issues:
        lines.append("")
        lines.append("Warnings:")
        for s in content.issues[:40]:
            lines.append(f"- {s}")
        if len(content.issues) > 40:
            lines.append(f"... and {len(content.issues)-40} more")
    else:
        lines.append("")
        lines.append("No validation issues detected.")
    return "\n".join(lines)
