import pytest
from types import SimpleNamespace
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from errors import NotFound, Forbidden, InvalidRequest, Unavailable
from models import Draft, ShareGrant, SurveyLink
import store

def _draft_count(db, survey_id, owner_id):
    return db.execute(
        select(func.count()).select_from(Draft).where(Draft.survey_id == survey_id, Draft.owner_id == owner_id)
    ).scalar_one()

def test_canonical_survey_by_id_or_token(db, make_survey):
    s = make_survey()
    assert store.resolve_canonical_survey(db, s.id).id == s.id
    assert store.resolve_canonical_survey(db, str(s.id)).id == s.id
    assert store.resolve_canonical_survey(db, s.public_id).id == s.id
    for bad in ("", None, "missing-token", "999999999", "\u00b2", "\u0663", "9" * 30):
        with pytest.raises(NotFound):
            store.resolve_canonical_survey(db, bad)

def test_resave_overwrites_in_place(db, make_survey):
    s = make_survey(title="Before")
    again, created = store.save_survey(db, {"elements": []}, title="After", ref=s.public_id)
    assert not created and again.id == s.id
    assert store.resolve_canonical_survey(db, s.id).title == "After"

def test_save_survey_with_new_token_and_defaults(db, uid):
    token = uid("tok")
    s, created = store.save_survey(db, {"elements": []}, ref=token)
    assert created and s.public_id == token and s.title == store.DEFAULT_TITLE
    with pytest.raises(InvalidRequest):
        store.save_survey(db, {"elements": []}, ref="12345678901")
    with pytest.raises(InvalidRequest):
        store.save_survey(db, None)

def test_draft_round_trip_and_single_row(db, make_survey, uid):
    s = make_survey()
    a, b = uid("a"), uid("b")
    assert store.save_draft(db, s.id, a, a, {"q1": "yes"}) == {"created": True}
    assert store.save_draft(db, s.id, a, b, {"q2": ["x", "y"]}) == {"created": False}
    assert _draft_count(db, s.id, a) == 1

    row = store.load_draft(db, s.id, a)
    assert row.answers == {"q2": ["x", "y"]}     # replaced wholesale, no merge
    assert row.saved_by_user_id == b
    assert row.owner_id == a

def test_drafts_of_different_owners_do_not_collide(db, make_survey, uid):
    s = make_survey()
    a, b = uid("a"), uid("b")
    store.save_draft(db, s.id, a, a, {"q1": "a"})
    store.save_draft(db, s.id, b, b, {"q1": "b"})
    assert store.load_draft(db, s.id, a).answers == {"q1": "a"}
    assert store.load_draft(db, s.id, b).answers == {"q1": "b"}

def test_draft_requires_owner_and_object_answers(db, make_survey, uid):
    s = make_survey()
    a = uid("a")
    for owner in ("", None):
        with pytest.raises(InvalidRequest):
            store.save_draft(db, s.id, owner, a, {"q1": "x"})
    with pytest.raises(InvalidRequest):
        store.save_draft(db, s.id, a, a, ["not", "a", "map"])

def test_load_missing_draft(db, make_survey, uid):
    s = make_survey()
    with pytest.raises(NotFound):
        store.load_draft(db, s.id, uid())

def test_grant_is_idempotent_upsert(db, make_survey, uid):
    s = make_survey()
    a, b, c = uid("a"), uid("b"), uid("c")
    store.grant_share(db, s.id, a, b)
    store.grant_share(db, s.id, a, b)
    assert len(store.list_shares_for(db, s.id)) == 1

    # another owner cannot take over b's grant
    with pytest.raises(Forbidden):
        store.grant_share(db, s.id, c, b)
    grants = store.list_shares_for(db, s.id)
    assert len(grants) == 1 and grants[0].owner_id == a

    # an administrator can re-point it
    store.grant_share(db, s.id, c, b, is_admin=True)
    grants = store.list_shares_for(db, s.id)
    assert len(grants) == 1 and grants[0].owner_id == c
    assert store.list_shares_for(db, s.id, owner_id=a) == []

def test_grant_validation(db, make_survey, uid):
    s = make_survey()
    a = uid("a")
    with pytest.raises(InvalidRequest):
        store.grant_share(db, s.id, a, a)
    with pytest.raises(InvalidRequest):
        store.grant_share(db, s.id, "", a)

def test_revoke_rules(db, make_survey, uid):
    s = make_survey()
    a, b, c = uid("a"), uid("b"), uid("c")
    store.grant_share(db, s.id, a, b)

    with pytest.raises(Forbidden):
        store.revoke_share(db, s.id, b, c)
    with pytest.raises(Forbidden):
        store.revoke_share(db, s.id, b, b)
    store.revoke_share(db, s.id, b, a)
    assert store.find_share(db, s.id, b) is None
    with pytest.raises(NotFound):
        store.revoke_share(db, s.id, b, a)

    store.grant_share(db, s.id, a, b)
    store.revoke_share(db, s.id, b, "admin-1", is_admin=True)
    assert store.find_share(db, s.id, b) is None

def test_shares_received(db, make_survey, uid):
    s1, s2 = make_survey(), make_survey()
    a, b = uid("a"), uid("b")
    store.grant_share(db, s1.id, a, b)
    store.grant_share(db, s2.id, a, b)
    assert {g.survey_id for g in store.list_shares_received_by(db, b)} == {s1.id, s2.id}
    assert store.list_shares_received_by(db, a) == []

def test_link_create_or_reuse(db, make_survey, uid):
    s = make_survey()
    a = uid("a")
    first, created = store.get_or_create_link(db, s, a)
    again, created_again = store.get_or_create_link(db, s, a)
    assert created and not created_again and first.token == again.token
    assert store.is_owner_of_record(db, s.id, a)
    assert not store.is_owner_of_record(db, s.id, uid("b"))

def test_delete_cascades(db, make_survey, uid):
    s = make_survey()
    a, b = uid("a"), uid("b")
    store.get_or_create_link(db, s, a)
    store.save_draft(db, s.id, a, a, {"q1": "x"})
    store.grant_share(db, s.id, a, b)
    store.create_response(db, s.id, {"q1": "x"}, owner_id=a, submitted_by=a)
    sid = s.id

    store.delete_survey(db, s)
    assert _draft_count(db, sid, a) == 0
    assert db.execute(select(func.count()).select_from(ShareGrant).where(ShareGrant.survey_id == sid)).scalar_one() == 0
    assert db.execute(select(func.count()).select_from(SurveyLink).where(SurveyLink.survey_id == sid)).scalar_one() == 0
    assert store.list_responses(db, sid) == []

class _DownSession:
    """Stands in for a session whose database has gone away."""
    def _fail(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))
    execute = get = commit = _fail
    def rollback(self):
        pass

def test_store_failure_is_unavailable():
    with pytest.raises(Unavailable):
        store.load_draft(_DownSession(), 1, "a")
    with pytest.raises(Unavailable):
        store.resolve_canonical_survey(_DownSession(), "abc")

def test_first_save_from_two_sessions_creates_once(TestingSessionLocal, make_survey, uid):
    s = make_survey()
    a, b = uid("a"), uid("b")
    first, second = TestingSessionLocal(), TestingSessionLocal()
    try:
        results = [
            store.save_draft(first, s.id, a, a, {"q1": "one"}),
            store.save_draft(second, s.id, a, b, {"q1": "two"}),
        ]
        assert results == [{"created": True}, {"created": False}]
        assert _draft_count(first, s.id, a) == 1
        assert store.load_draft(first, s.id, a).answers == {"q1": "two"}
    finally:
        first.close()
        second.close()

class _MySQLSession:
    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name="mysql"))

def test_upsert_rejects_unsupported_dialect():
    with pytest.raises(NotImplementedError):
        store.save_draft(_MySQLSession(), 1, "a", "a", {"q1": "x"})
