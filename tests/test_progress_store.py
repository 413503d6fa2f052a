"""ProgressStore ledgers/stats/persistence and the battle unlock rule."""

import json
import random

import pytest

import medquest_core as core
from content_schema import normalize_question
from progress_store import (
    KEY_DIFFSET,
    KEY_EXPLORE,
    KEY_MISSED,
    KEY_RETESTED,
    KEY_SEC_PER_Q,
    KEY_STATS,
    KEY_TIMER_ON,
    LEDGER_MISSED,
    LEDGER_RETESTED,
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    ProgressStore,
    UnlockController,
    open_store,
    write_backup,
)


def question(stem="What is k?", topic="Cytogenetics", sub="Karyotype"):
    return normalize_question({"stem": stem, "options": ["x", "y"], "answer": "A"}, topic, sub)


# ---------------- Stats ----------------
def test_record_attempt_counts(progress):
    progress.record_attempt("T", "S", True)
    progress.record_attempt("T", "S", False)
    rec = progress.sub_stats("T", "S")
    assert (rec.attempted, rec.correct) == (2, 1)
    assert progress.sub_accuracy("T", "S") == 0.5
    assert progress.sub_stats("T", "other").attempted == 0


def test_correct_never_exceeds_attempted(progress):
    r = random.Random(3)
    for _ in range(200):
        progress.record_attempt("T", r.choice(["a", "b"]), r.random() < 0.6)
        for rec in progress.subs.values():
            assert 0 <= rec.correct <= rec.attempted


def test_topic_accuracy_sums_subtopics(progress):
    progress.record_attempt("T", "a", True)
    progress.record_attempt("T", "b", False)
    progress.record_attempt("T", "b", True)
    pct, correct, total = progress.topic_accuracy("T", ["a", "b", "c"])
    assert (correct, total) == (2, 3)
    assert pct == pytest.approx(2 / 3)
    assert progress.topic_accuracy("T", []) == (0.0, 0, 0)


def test_record_quiz(progress):
    res = progress.record_quiz("Battle", 10, 7, ts=123)
    assert progress.quizzes == [res]
    assert (res.title, res.total, res.correct, res.ts) == ("Battle", 10, 7, 123)


# ---------------- Ledgers ----------------
def test_wrong_then_right_moves_missed_to_retested(progress):
    q = question()

    assert progress.apply_grade(q, False, "6") == LEDGER_MISSED
    assert q.qid in progress.missed
    assert progress.missed[q.qid]["week_id"] == "6"

    assert progress.apply_grade(q, True, "6") == LEDGER_RETESTED
    assert q.qid not in progress.missed
    assert q.qid in progress.retested
    assert "retested_at" in progress.retested[q.qid]
    assert progress.retested[q.qid]["stem"] == q.stem


def test_correct_unseen_changes_nothing(progress):
    assert progress.apply_grade(question(), True, "6") == ""
    assert progress.missed == {} and progress.retested == {}


def test_fresh_miss_after_retest_reenters_missed_only(progress):
    q = question()
    progress.apply_grade(q, False, "6")
    progress.apply_grade(q, True, "6")
    progress.apply_grade(q, False, "7")
    assert q.qid in progress.missed
    assert q.qid not in progress.retested
    assert progress.missed[q.qid]["week_id"] == "7"


def test_ledgers_stay_exclusive(progress):
    qs = [question(stem=f"s{i}") for i in range(4)]
    r = random.Random(11)
    for _ in range(300):
        progress.apply_grade(r.choice(qs), r.random() < 0.5, "6")
        assert not set(progress.missed) & set(progress.retested)


def test_mark_retested_absent_is_noop(progress):
    assert progress.mark_retested("nope") is False
    assert progress.retested == {}


def test_mark_missed_overwrites(progress):
    q = question()
    progress.mark_missed(q, "5")
    progress.mark_missed(q, "6")
    assert len(progress.missed) == 1
    assert progress.missed[q.qid]["week_id"] == "6"


def test_clear(progress):
    progress.mark_missed(question(), "6")
    progress.clear(LEDGER_MISSED)
    assert progress.missed == {}
    with pytest.raises(ValueError):
        progress.clear("bogus")


def test_ledger_groups_by_topic_and_week(progress):
    progress.mark_missed(question(stem="a", topic="T1", sub="S1"), "6")
    progress.mark_missed(question(stem="b", topic="T1", sub="S2"), "6")
    progress.mark_missed(question(stem="c", topic="T2", sub="S1"), "5")

    groups = progress.ledger_groups(LEDGER_MISSED, "6")
    assert set(groups) == {"T1"}
    assert set(groups["T1"]) == {"S1", "S2"}

    everything = progress.ledger_groups(LEDGER_MISSED)
    assert set(everything) == {"T1", "T2"}


# ---------------- Settings ----------------
def test_difficulty_filter_never_empty(progress):
    progress.difficulty_filter = ["hard", "Easy"]
    assert progress.difficulty_filter == ["easy", "hard"]
    progress.difficulty_filter = []
    assert progress.difficulty_filter == list(core.DIFFICULTIES)
    progress.difficulty_filter = ["bogus"]
    assert progress.difficulty_filter == list(core.DIFFICULTIES)


def test_seconds_per_question_clamped(progress):
    progress.set_seconds_per_question(1)
    assert progress.seconds_per_question == core.MIN_SECONDS_PER_QUESTION
    progress.set_seconds_per_question("abc")
    assert progress.seconds_per_question == core.DEFAULT_SECONDS_PER_QUESTION


# ---------------- Load / save ----------------
def test_save_load_roundtrip(progress, store):
    q = question()
    progress.record_attempt("T", "S", True)
    progress.apply_grade(q, False, "6")
    progress.record_quiz("Quiz", 5, 3, ts=1)
    progress.unlock("Cytogenetics")
    progress.timer_enabled = True
    progress.set_seconds_per_question(40)
    progress.difficulty_filter = ["hard"]
    progress.explore = True
    progress.save(store)

    loaded = ProgressStore.load(store)
    assert loaded.sub_stats("T", "S").correct == 1
    assert q.qid in loaded.missed
    assert loaded.quizzes[0].title == "Quiz"
    assert loaded.topic_unlocks == ["Cytogenetics"]
    assert loaded.timer_enabled is True
    assert loaded.seconds_per_question == 40
    assert loaded.difficulty_filter == ["hard"]
    assert loaded.explore is True
    assert store.get(KEY_STATS)["subs"]["T|S"] == {"attempted": 1, "correct": 1}


def test_load_coerces_bad_values():
    store = MemoryStore(
        {
            KEY_STATS: {"subs": {"T|S": {"attempted": "3", "correct": 9}, "T|X": "junk"}, "quizzes": ["x"]},
            KEY_MISSED: {"k": {"stem": "s"}},
            KEY_RETESTED: {"k": {"stem": "s"}, "j": "junk"},
            KEY_SEC_PER_Q: 99999,
            KEY_DIFFSET: [],
        }
    )
    p = ProgressStore.load(store)
    assert (p.sub_stats("T", "S").attempted, p.sub_stats("T", "S").correct) == (3, 3)
    assert p.sub_stats("T", "X").attempted == 0
    assert p.quizzes == []
    assert "k" in p.missed and p.retested == {}
    assert p.seconds_per_question == core.MAX_SECONDS_PER_QUESTION
    assert p.difficulty_filter == list(core.DIFFICULTIES)


def test_load_empty_store_defaults(store):
    p = ProgressStore.load(store)
    assert p.subs == {} and p.missed == {} and p.topic_unlocks == []
    assert p.seconds_per_question == core.DEFAULT_SECONDS_PER_QUESTION
    assert p.timer_enabled is False and p.explore is False


@pytest.mark.parametrize("quizzes", [5, "abc", {"a": 1}, None])
def test_load_ignores_non_list_quizzes(quizzes):
    store = MemoryStore({KEY_STATS: {"subs": {"T|S": {"attempted": 2, "correct": 1}}, "quizzes": quizzes}})
    p = ProgressStore.load(store)
    assert p.quizzes == []
    assert p.sub_stats("T", "S").attempted == 2


@pytest.mark.parametrize(
    "raw, expected",
    [
        (True, True),
        (False, False),
        ("true", True),
        (" TRUE ", True),
        ("1", True),
        ("false", False),
        ("False", False),
        ("0", False),
        ("", False),
        (1, True),
        (0, False),
        (None, False),
        ([1], False),
    ],
)
def test_load_reads_stored_flags(raw, expected):
    p = ProgressStore.load(MemoryStore({KEY_TIMER_ON: raw, KEY_EXPLORE: raw}))
    assert p.timer_enabled is expected
    assert p.explore is expected


def test_abstract_store_cannot_be_instantiated():
    with pytest.raises(TypeError):
        KeyValueStore()


def test_save_writes_file_once(tmp_path, monkeypatch):
    path = tmp_path / "progress.json"
    s = JsonFileStore(path)
    writes = []
    real_write = core.atomic_write_json

    def counting_write(*args, **kwargs):
        writes.append(args[0])
        return real_write(*args, **kwargs)

    monkeypatch.setattr(core, "atomic_write_json", counting_write)
    p = ProgressStore()
    p.record_attempt("T", "S", True)
    p.timer_enabled = True
    p.save(s)

    assert writes == [path]
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk[KEY_TIMER_ON] is True
    assert on_disk[KEY_STATS]["subs"]["T|S"]["correct"] == 1


def test_memory_store_set_many():
    s = MemoryStore({"a": 1})
    s.set_many({"a": 2, "b": 3})
    assert s.snapshot() == {"a": 2, "b": 3}


def test_json_file_store_persists(tmp_path):
    path = tmp_path / "nested" / "progress.json"
    s = JsonFileStore(path)
    p = ProgressStore()
    p.record_attempt("T", "S", False)
    p.save(s)

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk[KEY_STATS]["subs"]["T|S"]["attempted"] == 1
    assert not path.with_suffix(".json.tmp").exists()

    again = ProgressStore.load(JsonFileStore(path))
    assert again.sub_stats("T", "S").attempted == 1


def test_json_file_store_rejects_invalid_json(tmp_path):
    path = tmp_path / "progress.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        JsonFileStore(path)


def test_open_store_follows_backend(disk_backend, monkeypatch):
    assert isinstance(open_store(), JsonFileStore)
    monkeypatch.setattr(core, "PERSISTENCE_BACKEND", "session")
    s = open_store()
    assert isinstance(s, MemoryStore) and not isinstance(s, JsonFileStore)


def test_write_backup(disk_backend, progress):
    progress.record_attempt("T", "S", True)
    out = write_backup(progress)
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["progress"][KEY_STATS]["subs"]["T|S"]["correct"] == 1


def test_write_backup_session_only(monkeypatch, progress):
    monkeypatch.setattr(core, "PERSISTENCE_BACKEND", "session")
    assert "session-only" in str(write_backup(progress))


# ---------------- UnlockController ----------------
def test_first_topic_always_unlocked(progress, content):
    u = UnlockController(progress, content.canonical_topics())
    assert progress.topic_unlocks == ["Introduction to Neoplasia"]
    assert u.is_unlocked("introduction  to neoplasia")
    assert not u.is_unlocked("Molecular Diagnostics")
    assert u.is_unlocked("Molecular Diagnostics", explore=True)


def test_three_in_a_row_unlocks_next_topic_once(progress, unlocks):
    first = "Introduction to Neoplasia"

    assert unlocks.on_graded(first, True) is None
    assert unlocks.on_graded(first, True) is None
    assert unlocks.on_graded(first, True) == "Molecular Diagnostics"
    assert unlocks.streak(first) == 0
    assert "Molecular Diagnostics" in progress.topic_unlocks

    assert unlocks.on_graded(first, True) is None
    assert "Cytogenetics" not in progress.topic_unlocks
    assert unlocks.streak(first) == 1


def test_wrong_answer_resets_streak(unlocks, progress):
    t = "Introduction to Neoplasia"
    unlocks.on_graded(t, True)
    unlocks.on_graded(t, True)
    unlocks.on_graded(t, False)
    assert unlocks.streak(t) == 0
    unlocks.on_graded(t, True)
    assert "Molecular Diagnostics" not in progress.topic_unlocks


def test_last_topic_and_unknown_topic_unlock_nothing(unlocks, progress):
    for t in ("Cytogenetics", "Not A Topic"):
        for _ in range(3):
            unlocks.on_graded(t, True)
    assert progress.topic_unlocks == ["Introduction to Neoplasia"]


def test_unlock_set_never_shrinks(unlocks, progress):
    r = random.Random(5)
    topics = unlocks.topics
    seen = set(progress.topic_unlocks)
    for _ in range(300):
        unlocks.on_graded(r.choice(topics), r.random() < 0.8)
        now = set(progress.topic_unlocks)
        assert seen <= now
        seen = now
    unlocks.reset_streaks()
    assert set(progress.topic_unlocks) == seen


def test_rule_applies_only_to_whole_topic_battles(unlocks, progress):
    assert unlocks.applies("battle", None)
    assert not unlocks.applies("battle", "Hallmarks")
    assert not unlocks.applies("custom", None)
    progress.explore = True
    assert not unlocks.applies("battle", None)
