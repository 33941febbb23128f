import json

from suitability_agent.models import Session, SessionEvent
from suitability_agent.sessions import SessionStore
from suitability_agent.stages import Stage


class TestSessionStore:
    def test_create_records_ip(self, store):
        session = store.create(ip="10.0.0.1")
        assert session.data["audit"]["ip"] == "10.0.0.1"
        assert store.get(session.id) is session

    def test_get_unknown_without_redis(self, store):
        assert store.get("missing") is None

    def test_save_appends_meta_and_snapshot(self, store, settings):
        session = store.create()
        store.save(session)
        lines = settings.session_log.read_text(encoding="utf-8").splitlines()
        meta, record = (json.loads(line) for line in lines)
        assert meta["_meta"]["session_id"] == session.id
        assert meta["_meta"]["stage"] == Stage.EXPLANATION.value
        assert record["id"] == session.id

    def test_list_sorted_by_creation(self, store):
        first = store.create()
        second = store.create()
        assert [item.id for item in store.list()] == [first.id, second.id]


class TestLoadArchive:
    def test_latest_snapshot_wins(self, settings):
        writer = SessionStore(settings.session_log)
        session = writer.create()
        writer.save(session)
        session.stage = Stage.ONBOARDING
        session.append_event(
            SessionEvent(author="client", type="message", content={"text": "ready"})
        )
        writer.save(session)

        reader = SessionStore(settings.session_log)
        assert reader.load_archive() == 1
        restored = reader.get(session.id)
        assert restored.stage is Stage.ONBOARDING
        assert restored.events[0].text == "ready"

    def test_malformed_lines_skipped(self, settings):
        good = Session()
        settings.session_log.write_text(
            "not json\n"
            + json.dumps({"id": "bad", "stage": "NOWHERE"})
            + "\n"
            + json.dumps(good.to_dict())
            + "\n",
            encoding="utf-8",
        )
        store = SessionStore(settings.session_log)
        assert store.load_archive() == 1
        assert store.get(good.id) is not None
        assert store.get("bad") is None

    def test_missing_archive(self, tmp_path):
        assert SessionStore(tmp_path / "absent.jsonl").load_archive() == 0


def test_round_trip_keeps_context(store):
    session = store.create()
    session.context.require_risk_override = True
    restored = Session.from_dict(session.to_dict())
    assert restored.context.require_risk_override is True
    assert restored.data == session.data
