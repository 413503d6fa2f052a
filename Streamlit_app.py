from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import streamlit as st

import medquest_core as core
from content_schema import StudyContent, content_health_report, split_document
from content_source import WeekConfig, load_week, load_weeks, make_source
from progress_store import (
    LEDGER_MISSED,
    LEDGER_RETESTED,
    ProgressStore,
    UnlockController,
    open_store,
    write_backup,
)
from quiz_engine import (
    MODE_BATTLE,
    MODE_CUSTOM,
    STAGE_REVIEW,
    GradeResult,
    QuizEngine,
    battle_pool,
    retest_pool,
    subtopics_for_display,
    vignette_pool,
)

logger = logging.getLogger(__name__)

SECTION_TITLES = {
    "content": "",
    "eli5": "🧒 ELI5",
    "mnemonic": "🧠 Mnemonic",
    "connections": "🔗 Connections",
}


# ============================================================
# Config
# ============================================================
def apply_env_config():
    # MEDQUEST_BACKEND=disk|session, MEDQUEST_CONTENT=<dir or http(s) base URL>
    core.set_persistence_backend(os.environ.get("MEDQUEST_BACKEND", core.PERSISTENCE_BACKEND))
    core.set_content_base(os.environ.get("MEDQUEST_CONTENT", core.CONTENT_BASE))


# ============================================================
# Loading (cached content; progress is not cached)
# ============================================================
@st.cache_data(show_spinner=False)
def load_weeks_cached(base: str) -> List[WeekConfig]:
    return load_weeks(make_source(base))


@st.cache_data(show_spinner="Loading week content…")
def load_content_cached(base: str, week_id: str) -> StudyContent:
    week = find_week(load_weeks_cached(base), week_id)
    return load_week(make_source(base, week))


def find_week(weeks: List[WeekConfig], week_id: str) -> WeekConfig:
    for w in weeks:
        if w.id == week_id:
            return w
    return weeks[0]


# ============================================================
# State
# ============================================================
def ensure_state():
    if st.session_state.get("initialized"):
        return

    store = open_store()
    st.session_state.initialized = True
    st.session_state.store = store
    st.session_state.progress = ProgressStore.load(store)

    # per-week runtime (rebuilt when the week changes)
    st.session_state.week_id = None
    st.session_state.unlocks = None   # type: Optional[UnlockController]
    st.session_state.engine = None    # type: Optional[QuizEngine]

    # navigation
    st.session_state.learn_target = None  # Optional[(topic, subtopic)]
    st.session_state.review_view = LEDGER_MISSED
    st.session_state.review_this_week = True
    st.session_state.confirm_clear = ""

    # feedback
    st.session_state.banner = None        # Optional[(kind, text)]
    st.session_state.last_grade = None    # Optional[GradeResult]


def ensure_week(content: StudyContent, week: WeekConfig):
    if st.session_state.week_id == week.id and st.session_state.engine is not None:
        return

    old = st.session_state.engine
    if old is not None and old.active:
        old.abandon()

    progress: ProgressStore = st.session_state.progress
    unlocks = UnlockController(progress, content.canonical_topics(), content.notes.resolver)
    st.session_state.unlocks = unlocks
    st.session_state.engine = QuizEngine(progress, unlocks, week_stamp=week.id)
    st.session_state.week_id = week.id
    st.session_state.learn_target = None
    st.session_state.last_grade = None
    save_all()
    logger.info(f"Week {week.id} ready: {len(content.canonical_topics())} topics")


def save_all():
    st.session_state.progress.save(st.session_state.store)


def progress() -> ProgressStore:
    return st.session_state.progress


def engine() -> QuizEngine:
    return st.session_state.engine


def banner(kind: str, text: str):
    st.session_state.banner = (kind, text)


# ============================================================
# Quiz start / grading glue
# ============================================================
def start_quiz(
    pool,
    n: int,
    mode: str,
    title: str,
    topic: str = "",
    subtopic: Optional[str] = None,
    difficulties: Optional[List[str]] = None,
):
    try:
        engine().start(pool, n, mode, title=title, topic=topic, subtopic=subtopic, difficulties=difficulties)
    except core.EmptyPoolError as e:
        banner("warning", str(e))
        return
    st.session_state.last_grade = None
    st.session_state.banner = None


def start_battle(content: StudyContent, topic: str, subtopic: Optional[str] = None):
    if not st.session_state.unlocks.is_unlocked(topic):
        banner("warning", "Locked. Win a topic Battle (3-in-a-row) to unlock the next topic.")
        return
    pool = battle_pool(content, topic, subtopic, progress().difficulty_filter)
    title = f"{topic} — {subtopic}" if subtopic else topic
    start_quiz(pool, core.BATTLE_LENGTH, MODE_BATTLE, title, topic=topic, subtopic=subtopic)


def start_vignettes(content: StudyContent, topic: str, subtopic: Optional[str], n: int):
    diff = progress().difficulty_filter
    pool = vignette_pool(content, topic, subtopic, diff)
    title = f"Vignettes: {topic}" + (f" — {subtopic}" if subtopic else "")
    start_quiz(pool, n, MODE_CUSTOM, title, topic=topic, subtopic=subtopic, difficulties=diff)


def start_retest(snapshots: List[Dict[str, Any]], title: str):
    pool = retest_pool(snapshots)
    start_quiz(pool, core.RETEST_LENGTH, MODE_CUSTOM, title)


def after_grade(res: Optional[GradeResult]):
    if res is None:
        return
    st.session_state.last_grade = res
    if res.unlocked:
        banner("success", f"🔓 Unlocked: {res.unlocked}")
    save_all()


# ============================================================
# UI helpers
# ============================================================
def pct(x: float) -> str:
    return f"{x * 100:.0f}%"


def show_banner():
    b = st.session_state.banner
    if not b:
        return
    kind, text = b
    getattr(st, kind, st.info)(text)


def render_document(text: str):
    for label, body in split_document(text):
        title = SECTION_TITLES.get(label, "")
        if title:
            st.markdown(f"**{title}**")
        st.markdown(body)


def show_feedback(res: GradeResult):
    if res.correct:
        st.success("✅ Correct")
    else:
        st.error("❌ Incorrect" if res.picked else "⏱️ Time's up")
    st.markdown(f"**Answer: {res.answer}. {res.answer_text}**")
    if res.explanation:
        with st.expander("Explanation", expanded=True):
            st.write(res.explanation)


# ============================================================
# Learn
# ============================================================
def render_learn(content: StudyContent):
    topic, sub = st.session_state.learn_target
    node = content.notes.subtopic(topic, sub)

    c1, c2 = st.columns([4, 1])
    with c1:
        st.subheader(f"📖 {topic} — {sub}")
    with c2:
        if st.button("Back", use_container_width=True):
            st.session_state.learn_target = None
            st.rerun()

    if node is None:
        st.info("No notes for this subtopic yet.")
        return

    if node.slide_reference:
        st.caption(f"Slides: {node.slide_reference}")
    render_document(node.content)
    if node.clinical_pearl:
        st.info(f"💎 Clinical pearl: {node.clinical_pearl}")

    if st.button("⚔️ Battle this subtopic", type="primary"):
        start_battle(content, topic, sub)
        st.rerun()


# ============================================================
# Topics
# ============================================================
def render_topics(content: StudyContent):
    unlocks: UnlockController = st.session_state.unlocks
    p = progress()

    if not content.notes.topics:
        st.warning("No topics found in this week's notes.")
        return

    for t in content.notes.topics:
        subs = subtopics_for_display(content, t.name)
        acc, correct, total = p.topic_accuracy(t.name, [s.name for s in subs])
        unlocked = unlocks.is_unlocked(t.name)

        with st.container(border=True):
            head, btns = st.columns([3, 2], vertical_alignment="top")
            with head:
                st.markdown(f"### {'' if unlocked else '🔒 '}{t.name}")
                st.progress(acc, text=f"{pct(acc)} ({correct}/{total})")
                if not unlocked:
                    st.caption("Locked — win 3-in-a-row in Battle to unlock.")
            with btns:
                b1, b2 = st.columns(2)
                with b1:
                    if st.button("📖 Learn", key=f"learn::{t.key}", use_container_width=True, disabled=not subs):
                        st.session_state.learn_target = (t.name, subs[0].name)
                        st.rerun()
                with b2:
                    if st.button("⚔️ Battle", key=f"battle::{t.key}", use_container_width=True, disabled=not unlocked):
                        start_battle(content, t.name)
                        st.rerun()

            with st.expander(f"Subtopics ({len(subs)})"):
                for s in subs:
                    rec = p.sub_stats(t.name, s.name)
                    r1, r2, r3, r4 = st.columns([3, 1, 1, 1], vertical_alignment="center")
                    with r1:
                        st.write(f"**{s.name}** — {pct(rec.accuracy)} ({rec.correct}/{rec.attempted})")
                        st.caption(f"{s.regular_count} questions | {s.long_count} vignettes")
                    with r2:
                        if st.button("Learn", key=f"learn::{t.key}::{s.name}", use_container_width=True):
                            st.session_state.learn_target = (t.name, s.name)
                            st.rerun()
                    with r3:
                        if st.button(
                            "Battle",
                            key=f"battle::{t.key}::{s.name}",
                            use_container_width=True,
                            disabled=not unlocked or not (s.regular_count or s.long_count),
                        ):
                            start_battle(content, t.name, s.name)
                            st.rerun()
                    with r4:
                        if st.button(
                            "Vignette",
                            key=f"vig::{t.key}::{s.name}",
                            use_container_width=True,
                            disabled=not s.long_count,
                        ):
                            start_vignettes(content, t.name, s.name, core.VIGNETTE_LENGTH)
                            st.rerun()


# ============================================================
# Vignette builder
# ============================================================
def render_builder(content: StudyContent):
    p = progress()
    topics = content.canonical_topics()
    if not topics:
        st.warning("No topics available.")
        return

    c1, c2 = st.columns(2)
    with c1:
        topic = st.selectbox("Topic", topics, key="builder_topic")
    with c2:
        subs = ["(all)"] + [s.name for s in subtopics_for_display(content, topic) if s.long_count]
        sub = st.selectbox("Subtopic", subs, key="builder_sub")

    diff = st.multiselect("Difficulty", list(core.DIFFICULTIES), default=p.difficulty_filter)
    if diff != p.difficulty_filter:
        p.difficulty_filter = diff
        save_all()

    subtopic = None if sub == "(all)" else sub
    available = len(vignette_pool(content, topic, subtopic, p.difficulty_filter))
    n = st.number_input("Questions", 1, max(1, available), min(core.VIGNETTE_LENGTH, max(1, available)), 1)
    st.caption(f"{available} vignettes match.")

    if st.button("Start vignettes", type="primary", disabled=available == 0):
        start_vignettes(content, topic, subtopic, int(n))
        st.rerun()


# ============================================================
# Review
# ============================================================
def render_review(week: WeekConfig):
    p = progress()

    c1, c2, c3 = st.columns([2, 2, 2], vertical_alignment="center")
    with c1:
        st.session_state.review_view = st.radio(
            "Show",
            [LEDGER_MISSED, LEDGER_RETESTED],
            index=[LEDGER_MISSED, LEDGER_RETESTED].index(st.session_state.review_view),
            format_func=lambda x: "❌ Missed" if x == LEDGER_MISSED else "✅ Retested",
            horizontal=True,
        )
    with c2:
        st.session_state.review_this_week = st.checkbox(
            f"Only {week.title}", value=st.session_state.review_this_week
        )
    with c3:
        view = st.session_state.review_view
        if st.session_state.confirm_clear == view:
            y, n = st.columns(2)
            with y:
                if st.button("Confirm clear", type="primary", use_container_width=True):
                    p.clear(view)
                    save_all()
                    st.session_state.confirm_clear = ""
                    banner("success", f"🗑 Cleared {view}.")
                    st.rerun()
            with n:
                if st.button("Cancel", use_container_width=True):
                    st.session_state.confirm_clear = ""
                    st.rerun()
        elif st.button(f"🗑 Clear {view}", use_container_width=True):
            st.session_state.confirm_clear = view
            st.rerun()

    view = st.session_state.review_view
    groups = p.ledger_groups(view, week.id if st.session_state.review_this_week else None)
    if not groups:
        st.info("Nothing here yet.")
        return

    everything = [snap for subs in groups.values() for snaps in subs.values() for snap in snaps]
    if view == LEDGER_MISSED and st.button(f"🔁 Retest all ({len(everything)})", type="primary"):
        start_retest(everything, "Retest: missed")
        st.rerun()

    for topic, subs in groups.items():
        with st.expander(f"{topic} ({sum(len(v) for v in subs.values())})", expanded=False):
            for sub, snaps in subs.items():
                a, b = st.columns([4, 1], vertical_alignment="center")
                with a:
                    st.markdown(f"**{sub}** — {len(snaps)}")
                with b:
                    if view == LEDGER_MISSED and st.button(
                        "Retest", key=f"retest::{topic}::{sub}", use_container_width=True
                    ):
                        start_retest(snaps, f"Retest: {topic} — {sub}")
                        st.rerun()
                for snap in snaps:
                    st.caption(f"• {str(snap.get('stem', ''))[:160]}")


# ============================================================
# Quiz
# ============================================================
@st.fragment(run_every=1)
def render_timer():
    eng = engine()
    if eng is None or eng.session is None or not eng.session.timer_enabled:
        return
    res = eng.tick()
    if res is not None:
        after_grade(res)
        st.rerun()
    rem = eng.remaining()
    if rem is not None:
        st.metric("⏱️ Time left", f"{int(rem)}s")


def on_pick(key: str):
    letter = st.session_state.get(key)
    if letter is not None:
        engine().pick(letter)


def render_live():
    eng = engine()
    s = eng.session
    q = s.current()
    slot = s.slot()

    top, timer = st.columns([4, 1])
    with top:
        st.subheader(s.title)
        line = f"Question {s.index + 1}/{s.total} | Correct {s.correct_count}"
        if s.mode == MODE_BATTLE:
            line += f" | Streak: {st.session_state.unlocks.streak(s.topic)} / need {core.UNLOCK_STREAK}"
        st.caption(line)
    with timer:
        render_timer()

    st.write(q.stem)
    if q.image:
        st.image(q.image)

    letters = list(q.options.keys())
    key = f"quiz_pick::{id(s)}::{s.index}"
    st.radio(
        "Choose the best answer:",
        options=letters,
        format_func=lambda k: f"{k}. {q.options[k]}",
        index=letters.index(slot.picked) if slot.picked in letters else None,
        key=key,
        disabled=slot.locked,
        on_change=on_pick,
        args=(key,),
    )

    b1, b2, b3, b4 = st.columns(4)
    with b1:
        if st.button("Prev", use_container_width=True, disabled=s.index == 0):
            eng.prev()
            st.session_state.last_grade = None
            st.rerun()
    with b2:
        if st.button("Lock in", type="primary", use_container_width=True, disabled=slot.locked):
            if slot.picked is None:
                st.warning("Pick an option first.")
            else:
                after_grade(eng.lock_in())
                st.rerun()
    with b3:
        if st.button("Review" if s.is_last else "Next", use_container_width=True):
            eng.next()
            st.session_state.last_grade = None
            st.rerun()
    with b4:
        if st.button("Abandon", use_container_width=True):
            eng.abandon()
            save_all()
            banner("info", "Quiz abandoned. Locked answers were kept.")
            st.rerun()

    res = st.session_state.last_grade
    if slot.locked and res is not None and res.qid == s.qids[s.index]:
        show_feedback(res)
    elif slot.locked:
        st.caption("Already answered.")
        st.markdown(f"**Answer: {q.answer}. {q.answer_text()}**")


def render_quiz_review():
    eng = engine()
    s = eng.session

    st.subheader(f"Review: {s.title}")
    st.caption(f"Answered {s.locked_count}/{s.total} | Correct {s.correct_count}")

    for i, (q, slot) in enumerate(zip(s.items, s.answers)):
        mark = "⬜" if not slot.locked else ("✅" if slot.correct else "❌")
        a, b = st.columns([5, 1], vertical_alignment="center")
        with a:
            st.write(f"{mark} {i + 1}. {q.stem[:140]}")
        with b:
            if st.button("Go", key=f"revisit::{i}", use_container_width=True):
                eng.revisit(i)
                st.session_state.last_grade = None
                st.rerun()

    unanswered = s.total - s.locked_count
    if unanswered:
        st.warning(f"{unanswered} unanswered question(s) will be graded incorrect on submit.")

    c1, c2 = st.columns(2)
    with c1:
        if st.button("Submit quiz", type="primary", use_container_width=True):
            result = eng.submit()
            save_all()
            if result is not None:
                banner("success", f"🏁 {result.title}: {result.correct}/{result.total}")
            st.rerun()
    with c2:
        if st.button("Abandon", use_container_width=True):
            eng.abandon()
            save_all()
            st.rerun()


def render_quiz(content: StudyContent):
    if engine().session.stage == STAGE_REVIEW:
        render_quiz_review()
    else:
        render_live()


# ============================================================
# Sidebar
# ============================================================
def render_sidebar(weeks: List[WeekConfig]) -> WeekConfig:
    p = progress()
    with st.sidebar:
        st.header("Week")
        ids = [w.id for w in weeks]
        cur = st.session_state.week_id if st.session_state.week_id in ids else ids[0]
        week_id = st.selectbox(
            "Week",
            ids,
            index=ids.index(cur),
            format_func=lambda i: find_week(weeks, i).title,
            label_visibility="collapsed",
        )
        week = find_week(weeks, week_id)
        if week.subtitle:
            st.caption(week.subtitle)

        st.divider()
        st.header("Settings")

        explore = st.toggle("Explore mode (unlock everything)", value=p.explore)
        timer_on = st.checkbox("Per-question timer", value=p.timer_enabled)
        sec = st.slider(
            "Seconds per question",
            core.MIN_SECONDS_PER_QUESTION,
            core.MAX_SECONDS_PER_QUESTION,
            p.seconds_per_question,
            5,
            disabled=not timer_on,
        )
        if (explore, timer_on, sec) != (p.explore, p.timer_enabled, p.seconds_per_question):
            p.explore = explore
            p.timer_enabled = timer_on
            p.set_seconds_per_question(sec)
            save_all()

        st.divider()
        a1, a2 = st.columns(2)
        with a1:
            if st.button("Save", use_container_width=True):
                save_all()
                banner("success", "💾 Saved.")
        with a2:
            if st.button("Backup", use_container_width=True):
                path = write_backup(p)
                banner("success", f"✅ Backup written: {path}")

        if p.quizzes:
            st.divider()
            st.header("Recent quizzes")
            for q in reversed(p.quizzes[-5:]):
                st.caption(f"{q.title}: {q.correct}/{q.total}")

        st.caption(f"Storage: {core.PERSISTENCE_BACKEND}")
    return week


# ============================================================
# Main
# ============================================================
def main():
    st.set_page_config(page_title="MedQuest", layout="wide")
    core.configure_logging()
    apply_env_config()
    ensure_state()

    st.title("MedQuest")

    weeks = load_weeks_cached(core.CONTENT_BASE)
    week = render_sidebar(weeks)

    try:
        content = load_content_cached(core.CONTENT_BASE, week.id)
    except core.LoadError as e:
        logger.error(f"Loading week {week.id} failed: {e}")
        st.error(f"Could not load {week.title}.\n\n{e}")
        st.stop()

    ensure_week(content, week)

    if content.issues:
        with st.expander(f"⚠️ Content warnings ({len(content.issues)})", expanded=False):
            st.text(content_health_report(content))

    show_banner()

    if engine().active:
        render_quiz(content)
        return

    if st.session_state.learn_target:
        render_learn(content)
        return

    tab_topics, tab_vig, tab_review = st.tabs(["📚 Topics", "🧩 Vignettes", "🔁 Review"])
    with tab_topics:
        render_topics(content)
    with tab_vig:
        render_builder(content)
    with tab_review:
        render_review(week)


if __name__ == "__main__":
    main()
