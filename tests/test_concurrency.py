"""
Concurrency Tests:
  - expected_version guards against lost updates
  - a version bump behind the session's back surfaces as ConcurrentModification
  - the losing write leaves no movement behind
  - datastore timeouts and outages roll back and surface as 503s
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from reftrack.core.exceptions import ConcurrentModification, DatastoreTimeout, DatastoreUnavailable
from reftrack.models import db
from reftrack.models.reference import Movement, Reference
from reftrack.services.reference_lifecycle import apply_movement, create_reference, set_priority


def _ref(users):
    return create_reference("local", users["alice"], subject="Contended",
                            marked_to=[users["bob"].id], remarks="go")["reference"]


def _failing_commit(exc):
    def _commit(self):
        raise exc
    return _commit


class TestExpectedVersion:

    def test_second_writer_with_same_version_loses(self, users):
        bob, erin, carol = users["bob"], users["erin"], users["carol"]
        ref = _ref(users)

        first = apply_movement("local", ref["id"], bob, [erin.id], "InProgress", "mine",
                               expected_version=ref["version"])
        assert first["reference"]["version"] == ref["version"] + 1

        with pytest.raises(ConcurrentModification) as exc_info:
            apply_movement("local", ref["id"], carol, [bob.id], "InProgress", "no, mine",
                           expected_version=ref["version"], override=True)
        assert exc_info.value.code == "ERR_CONCURRENT_MODIFICATION"
        assert Movement.query.filter_by(reference_id=ref["id"]).count() == 2

    def test_priority_honours_expected_version(self, users):
        ref = _ref(users)
        with pytest.raises(ConcurrentModification):
            set_priority("local", ref["id"], users["bob"], "High", expected_version=ref["version"] + 5)

    def test_current_version_succeeds(self, users):
        ref = _ref(users)
        result = set_priority("local", ref["id"], users["bob"], "High", expected_version=ref["version"])
        assert result["changed"] is True


class TestStaleWrite:

    def test_concurrent_bump_is_detected_at_flush(self, users):
        ref = _ref(users)
        loaded = db.session.get(Reference, ref["id"])
        assert loaded.version == 1
        # Another writer bumps the row; the session still holds version 1
        db.session.execute(
            text("UPDATE reference_records SET version = version + 1 WHERE id = :id"),
            {"id": ref["id"]},
        )

        with pytest.raises(ConcurrentModification):
            apply_movement("local", ref["id"], users["bob"], [users["erin"].id], "InProgress", "late")

        db.session.expire_all()
        assert Movement.query.filter_by(reference_id=ref["id"]).count() == 1
        assert db.session.get(Reference, ref["id"]).marked_to == [users["bob"].id]


class TestDatastoreFailures:

    @pytest.mark.parametrize("exc, expected", [
        (OperationalError("COMMIT", {}, Exception("database is locked")), DatastoreTimeout),
        (OperationalError("COMMIT", {}, Exception("canceling statement due to statement timeout")),
         DatastoreTimeout),
        (OperationalError("COMMIT", {}, Exception("could not connect to server")), DatastoreUnavailable),
        (PoolTimeoutError("QueuePool limit of size 5 overflow 10 reached"), DatastoreTimeout),
    ])
    def test_failed_commit_is_translated_and_rolled_back(self, users, monkeypatch, exc, expected):
        ref = _ref(users)
        monkeypatch.setattr(Session, "commit", _failing_commit(exc))

        with pytest.raises(expected) as exc_info:
            apply_movement("local", ref["id"], users["bob"], [users["erin"].id], "Closed", "done")
        assert exc_info.value.http_status == 503
        assert exc_info.value.retryable is True

        monkeypatch.undo()
        db.session.expire_all()
        live = db.session.get(Reference, ref["id"])
        assert live.status == "Open"
        assert live.version == 1
        assert Movement.query.filter_by(reference_id=ref["id"]).count() == 1

    def test_timeout_reaches_the_client_as_503(self, client, users, as_actor, monkeypatch):
        ref = _ref(users)
        monkeypatch.setattr(Session, "commit",
                            _failing_commit(OperationalError("COMMIT", {}, Exception("database is locked"))))

        res = client.post(f"/api/v1/references/local/{ref['id']}/priority",
                          headers=as_actor(users["bob"]), json={"priority": "High"})
        assert res.status_code == 503
        body = res.get_json()
        assert body["success"] is False
        assert body["code"] == "ERR_TIMEOUT"

        monkeypatch.undo()
        db.session.expire_all()
        assert db.session.get(Reference, ref["id"]).priority == "Medium"
