"""Test configuration and fixtures."""

import json
import random
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parent.parent

# Flat modules live at the repo root
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import medquest_core as core
from content_schema import build_study_content
from progress_store import MemoryStore, ProgressStore, UnlockController


NOTES = {
    "lectures": [
        {
            "topic": "Introduction to Neoplasia",
            "subtopics": [
                {"name": "Hallmarks", "content": "Six hallmarks.", "eli5": "Cells stop listening."},
                {"name": "Grading", "high_yield": ["Grade = differentiation", "Stage = spread"]},
            ],
        },
        {
            "topic": "Molecular Diagnostics",
            "subtopics": [{"name": "PCR", "content": "Amplifies DNA."}],
        },
        {
            "topic": "Cytogenetics",
            "subtopics": [{"name": "Karyotype", "content": "Metaphase spread."}],
        },
    ]
}


def make_q(topic, sub, n, answer="A", **extra):
    q = {
        "topic": topic,
        "subtopic": sub,
        "stem": f"{topic} {sub} question {n}",
        "options": ["alpha", "beta", "gamma", "delta"],
        "answer": answer,
    }
    q.update(extra)
    return q


@pytest.fixture
def bank():
    qs = []
    for i in range(6):
        qs.append(make_q("Introduction to Neoplasia", "Hallmarks", i, difficulty="easy" if i % 2 else "hard"))
    for i in range(3):
        qs.append(make_q("Molecular Diagnostics", "PCR", i))
    qs.append(make_q("Cytogenetics", "Karyotype", 0))
    return {"questions": qs}


@pytest.fixture
def content(bank):
    return build_study_content(NOTES, bank)


@pytest.fixture
def progress():
    return ProgressStore()


@pytest.fixture
def unlocks(progress, content):
    return UnlockController(progress, content.canonical_topics(), content.notes.resolver)


@pytest.fixture
def store():
    return MemoryStore()


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, sec):
        self.t += sec


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(7)


@pytest.fixture
def content_dir(tmp_path, bank):
    (tmp_path / "notes.json").write_text(json.dumps(NOTES), encoding="utf-8")
    (tmp_path / "qbank.json").write_text(json.dumps(bank), encoding="utf-8")
    (tmp_path / "long.json").write_text(
        json.dumps({"questions": [make_q("Cytogenetics", "Karyotype", 9, vignette=True)]}),
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def disk_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(core, "PERSISTENCE_BACKEND", "disk")
    monkeypatch.setattr(core, "PROGRESS_FILE", tmp_path / "progress.json")
    monkeypatch.setattr(core, "BACKUP_DIR", tmp_path / "backups")
    return tmp_path
