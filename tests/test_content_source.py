"""Content sources, the week manifest, and the load barrier."""

import json

import pytest
import requests

import medquest_core as core
from content_schema import POOL_LONG, POOL_REGULAR
from content_source import (
    DEFAULT_WEEKS,
    NO_CACHE_HEADERS,
    ContentSource,
    FileContentSource,
    HttpContentSource,
    WeekConfig,
    fetch_week_payloads,
    load_week,
    load_weeks,
    make_source,
    parse_manifest,
)


class FakeResponse:
    def __init__(self, status=200, payload=None, content_type="application/json; charset=utf-8", reason="OK"):
        self.status_code = status
        self.reason = reason
        self.headers = {"content-type": content_type}
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else "<html></html>"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append((url, headers, timeout))
        r = self.routes.get(url)
        if isinstance(r, Exception):
            raise r
        return r or FakeResponse(status=404, reason="Not Found")


def json_week(**kw):
    return WeekConfig(id="6", kind="json", notes="notes.json", qbank="qbank.json", **kw)


# ---------------- Manifest ----------------
def test_parse_manifest():
    weeks = parse_manifest(
        {
            "weeks": [
                {"id": 6, "label": "Week 6", "kind": "JSON", "notes": "n.json", "qbank": "q.json"},
                {"id": "5", "kind": "legacy", "long_qbank": "long.json", "aliases": {"A": "B"}},
                {"label": "no id"},
            ]
        }
    )
    assert [w.id for w in weeks] == ["6", "5"]
    assert weeks[0].kind == "json" and weeks[0].unify_pools
    assert weeks[1].long_qbank == ["long.json"]
    assert weeks[1].separate_long_bank and not weeks[1].unify_pools
    assert weeks[1].aliases == {"A": "B"}
    assert weeks[1].title == "Week 5"


def test_parse_manifest_rejects_bad_shape():
    with pytest.raises(ValueError):
        parse_manifest({"weeks": "nope"})


def test_load_weeks_falls_back_to_defaults(tmp_path):
    assert load_weeks(FileContentSource(tmp_path)) == DEFAULT_WEEKS

    (tmp_path / core.MANIFEST_FILE).write_text(json.dumps({"weeks": [{"id": "9"}]}), encoding="utf-8")
    assert [w.id for w in load_weeks(FileContentSource(tmp_path))] == ["9"]


# ---------------- FileContentSource ----------------
def test_file_source_loads_week(content_dir):
    content = load_week(FileContentSource(content_dir, json_week()))
    assert content.canonical_topics()[0] == "Introduction to Neoplasia"
    # json weeks unify pools: the flat bank's regular and long copies are concatenated
    assert content.questions.regular is content.questions.long_form
    pcr = content.questions.questions(POOL_REGULAR, "Molecular Diagnostics", "PCR")
    assert len(pcr) == 6
    assert len({q.qid for q in pcr}) == 3


def test_file_source_missing_file_is_load_error(tmp_path):
    src = FileContentSource(tmp_path, json_week())
    with pytest.raises(core.LoadError):
        src.load_notes()


def test_file_source_invalid_json_is_load_error(tmp_path):
    (tmp_path / "notes.json").write_text("{oops", encoding="utf-8")
    with pytest.raises(core.LoadError):
        FileContentSource(tmp_path, json_week()).load_notes()


def test_source_without_week(tmp_path):
    with pytest.raises(LookupError):
        FileContentSource(tmp_path).load_notes()


def test_base_source_is_abstract():
    with pytest.raises(TypeError):
        ContentSource()


def test_legacy_week_uses_first_working_long_candidate(content_dir):
    week = WeekConfig(
        id="5", kind="legacy", notes="notes.json", qbank="qbank.json", long_qbank=["missing.json", "long.json"]
    )
    src = FileContentSource(content_dir, week)
    notes, regular, long_bank = fetch_week_payloads(src)
    assert long_bank["questions"][0]["vignette"] is True

    content = load_week(src)
    assert [q.stem for q in content.questions.questions(POOL_LONG, "Cytogenetics", "Karyotype")] == [
        "Cytogenetics Karyotype question 9"
    ]


def test_long_candidates_exhausted(content_dir):
    week = WeekConfig(id="5", kind="legacy", notes="notes.json", qbank="qbank.json", long_qbank=["a.json", "b.json"])
    with pytest.raises(core.ShapeFallbackExhausted):
        load_week(FileContentSource(content_dir, week))


def test_barrier_fails_when_any_payload_fails(content_dir):
    (content_dir / "qbank.json").unlink()
    with pytest.raises(core.LoadError):
        fetch_week_payloads(FileContentSource(content_dir, json_week()))


# ---------------- HttpContentSource ----------------
BASE = "https://example.test/data"


def test_http_source_fetches_with_no_cache(bank):
    session = FakeSession({f"{BASE}/qbank.json": FakeResponse(payload=bank)})
    src = HttpContentSource(BASE + "/", json_week(), session=session, timeout=5)

    assert src.load_question_bank(POOL_REGULAR) == bank
    url, headers, timeout = session.calls[0]
    assert url == f"{BASE}/qbank.json"
    assert headers == NO_CACHE_HEADERS
    assert timeout == 5


def test_http_source_status_error():
    session = FakeSession({f"{BASE}/notes.json": FakeResponse(status=500, payload={}, reason="Server Error")})
    with pytest.raises(core.LoadError, match="500"):
        HttpContentSource(BASE, json_week(), session=session).load_notes()


def test_http_source_content_type_error():
    session = FakeSession({f"{BASE}/notes.json": FakeResponse(payload={}, content_type="text/html")})
    with pytest.raises(core.LoadError, match="Expected JSON"):
        HttpContentSource(BASE, json_week(), session=session).load_notes()


def test_http_source_network_error():
    session = FakeSession({f"{BASE}/notes.json": requests.ConnectionError("down")})
    with pytest.raises(core.LoadError):
        HttpContentSource(BASE, json_week(), session=session).load_notes()


def test_http_source_without_session_uses_per_call_requests(monkeypatch, bank):
    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append((url, headers, timeout))
        if url.endswith("notes.json"):
            return FakeResponse(payload={"lectures": []})
        return FakeResponse(payload=bank)

    monkeypatch.setattr(requests, "get", fake_get)
    src = HttpContentSource(BASE, json_week(), timeout=7)
    assert src.session is None

    notes, regular, long_bank = fetch_week_payloads(src)
    assert regular == bank and long_bank is None
    assert sorted(c[0] for c in calls) == [f"{BASE}/notes.json", f"{BASE}/qbank.json"]
    assert all(h == NO_CACHE_HEADERS and t == 7 for _, h, t in calls)


def test_http_source_absolute_url_passthrough():
    src = HttpContentSource(BASE)
    assert src.url_for("https://cdn.test/x.json") == "https://cdn.test/x.json"
    assert src.url_for("/x.json") == f"{BASE}/x.json"


def test_make_source_picks_backend(tmp_path):
    assert isinstance(make_source(BASE), HttpContentSource)
    assert isinstance(make_source(str(tmp_path)), FileContentSource)
