# Persistence for surveys, links, responses, drafts and share grants.
# Performs no authorization: callers resolve access first (see access.py).
from __future__ import annotations
import functools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, delete, update, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import NotFound, Forbidden, InvalidRequest, Unavailable
from models import Survey, SurveyLink, SurveyResponse, Draft, ShareGrant
from security import make_link_token

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Survey"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def store_operation(fn):
    """Surface store connectivity/timeout failures as Unavailable, without retrying."""
    @functools.wraps(fn)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return fn(db, *args, **kwargs)
        except OperationalError as exc:
            db.rollback()
            logger.warning("Store unavailable in %s: %s", fn.__name__, exc.orig)
            raise Unavailable("Survey store is unavailable") from exc
    return wrapper


_CONFLICT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}

# Largest value an Integer primary key can hold (SQLite and PostgreSQL BIGINT).
MAX_INTERNAL_ID = 2**63 - 1


def _internal_id(ref: str) -> Optional[int]:
    """The store-internal id a reference spells, or None if it is not one."""
    if not (ref.isascii() and ref.isdigit()):
        return None
    value = int(ref)
    return value if value <= MAX_INTERNAL_ID else None


def _insert_or_update(db: Session, model, values: dict, keys: list[str], only_if=None) -> bool:
    """Insert a row keyed by `keys`, or update the existing one in place.

    The insert is a single `INSERT ... ON CONFLICT DO NOTHING`, so the unique
    key never yields two rows; whichever caller's insert lands reports
    created=True. `only_if` narrows the update; when it matches nothing,
    Forbidden is raised and the existing row is left untouched.

    Returns:
        bool: True if a new row was inserted.
    """
    dialect = db.get_bind().dialect.name
    insert = _CONFLICT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Upserts are not supported on the {dialect!r} dialect")

    inserted = db.execute(insert(model).values(**values).on_conflict_do_nothing(index_elements=keys))
    if inserted.rowcount:
        return True

    q = update(model).where(*[getattr(model, k) == values[k] for k in keys])
    if only_if is not None:
        q = q.where(only_if)
    updated = db.execute(q.values(**{k: v for k, v in values.items() if k not in keys}))
    if not updated.rowcount and only_if is not None:
        db.rollback()
        raise Forbidden("This entry belongs to someone else")
    return False

# ------------------------
# Surveys
# ------------------------
@store_operation
def resolve_canonical_survey(db: Session, id_or_token: Any) -> Survey:
    """Find a survey by its internal id or its public token.

    Raises:
        NotFound: neither form names a survey.
    """
    ref = str(id_or_token or "").strip()
    if not ref:
        raise NotFound("Survey not found")
    internal_id = _internal_id(ref)
    if internal_id is not None:
        survey = db.get(Survey, internal_id)
        if survey:
            return survey
    survey = db.execute(select(Survey).where(Survey.public_id == ref)).scalar_one_or_none()
    if not survey:
        raise NotFound("Survey not found")
    return survey

@store_operation
def save_survey(db: Session, definition: dict, title: Optional[str] = None, ref: Optional[str] = None) -> tuple[Survey, bool]:
    """Create a survey, or overwrite title/definition of the one `ref` names.

    Returns:
        tuple[Survey, bool]: (survey, created)
    """
    if not isinstance(definition, dict):
        raise InvalidRequest("Survey definition is required")
    title = (title or "").strip() or DEFAULT_TITLE

    survey = None
    if ref:
        try:
            survey = resolve_canonical_survey(db, ref)
        except NotFound:
            if ref.isdigit() or not ref.isascii() or len(ref) > 32:
                raise InvalidRequest("New survey ids must be non-numeric tokens of at most 32 characters")

    if survey:
        survey.title = title
        survey.definition = definition
        survey.updated_at = _now_utc()
        db.commit()
        logger.info("Survey %s overwritten", survey.public_id)
        return survey, False

    now = _now_utc()
    survey = Survey(public_id=ref or uuid.uuid4().hex, title=title, definition=definition,
                    created_at=now, updated_at=now)
    db.add(survey)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequest("Survey id already in use")
    logger.info("Survey %s created", survey.public_id)
    return survey, True

@store_operation
def list_surveys(db: Session) -> list[tuple[Survey, int]]:
    """All surveys, newest first, with their response counts."""
    q = (
        select(Survey, func.count(SurveyResponse.id))
        .join(SurveyResponse, SurveyResponse.survey_id == Survey.id, isouter=True)
        .group_by(Survey.id)
        .order_by(Survey.created_at.desc(), Survey.id.desc())
    )
    return [(s, n) for s, n in db.execute(q).all()]

@store_operation
def delete_survey(db: Session, survey: Survey) -> None:
    """Delete a survey with its links, responses, drafts and grants."""
    public_id = survey.public_id
    db.delete(survey)
    db.commit()
    logger.info("Survey %s deleted", public_id)

# ------------------------
# Links (owner-of-record per survey instance)
# ------------------------
@store_operation
def get_or_create_link(db: Session, survey: Survey, owner_id: str) -> tuple[SurveyLink, bool]:
    owner_id = (owner_id or "").strip()
    if not owner_id:
        raise InvalidRequest("owner_id is required")
    q = select(SurveyLink).where(SurveyLink.survey_id == survey.id, SurveyLink.owner_id == owner_id)
    existing = db.execute(q).scalar_one_or_none()
    if existing:
        return existing, False

    row = SurveyLink(survey_id=survey.id, owner_id=owner_id,
                     token=make_link_token(survey.public_id, owner_id), created_at=_now_utc())
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # minted concurrently for the same owner
        db.rollback()
        return db.execute(q).scalar_one(), False
    logger.info("Link minted for survey %s owner %s", survey.public_id, owner_id)
    return row, True

@store_operation
def is_owner_of_record(db: Session, survey_id: int, user_id: str) -> bool:
    q = select(SurveyLink.id).where(SurveyLink.survey_id == survey_id, SurveyLink.owner_id == user_id)
    return db.execute(q).first() is not None

# ------------------------
# Responses
# ------------------------
@store_operation
def create_response(db: Session, survey_id: int, answers: dict, owner_id: Optional[str] = None,
                    submitted_by: Optional[str] = None) -> SurveyResponse:
    if not isinstance(answers, dict):
        raise InvalidRequest("Answers must be an object keyed by field name")
    row = SurveyResponse(survey_id=survey_id, owner_id=owner_id, submitted_by=submitted_by,
                         raw_answers=answers, submitted_at=_now_utc())
    db.add(row)
    db.commit()
    logger.info("Response %s recorded for survey %s", row.id, survey_id)
    return row

@store_operation
def list_responses(db: Session, survey_id: int) -> list[SurveyResponse]:
    return db.execute(select(SurveyResponse).where(SurveyResponse.survey_id == survey_id)).scalars().all()

# ------------------------
# Drafts
# ------------------------
@store_operation
def save_draft(db: Session, survey_id: int, effective_owner_id: str, saved_by_user_id: str, answers: dict) -> dict:
    """Upsert the draft keyed by (survey_id, effective_owner_id), replacing answers wholesale.

    The owner is never defaulted from the writer: an empty owner id is rejected.

    Returns:
        dict: {"created": bool}

    Raises:
        InvalidRequest: empty owner id or non-object answers.
    """
    if not effective_owner_id:
        raise InvalidRequest("An effective owner id is required to save a draft")
    if not isinstance(answers, dict):
        raise InvalidRequest("Answers must be an object keyed by field name")

    created = _insert_or_update(db, Draft, {
        "survey_id": survey_id,
        "owner_id": effective_owner_id,
        "saved_by_user_id": saved_by_user_id or effective_owner_id,
        "answers": answers,
        "updated_at": _now_utc(),
    }, keys=["survey_id", "owner_id"])
    db.commit()
    logger.info("Draft saved survey=%s owner=%s by=%s created=%s",
                survey_id, effective_owner_id, saved_by_user_id, created)
    return {"created": created}

@store_operation
def load_draft(db: Session, survey_id: int, effective_owner_id: str) -> Draft:
    """Exact-key lookup; there is no fallback to other key shapes.

    Raises:
        NotFound: no draft for this (survey, owner).
    """
    row = db.execute(
        select(Draft).where(Draft.survey_id == survey_id, Draft.owner_id == effective_owner_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFound("Draft not found")
    return row

# ------------------------
# Share grants
# ------------------------
@store_operation
def grant_share(db: Session, survey_id: int, owner_id: str, shared_with_user_id: str,
                is_admin: bool = False) -> ShareGrant:
    """Idempotent upsert keyed by (survey_id, shared_with_user_id).

    A collaborator already shared in by another owner can only be re-pointed
    by an administrator.

    Raises:
        InvalidRequest: missing ids, or sharing with the owner themselves.
        Forbidden: the existing grant belongs to a different owner.
    """
    if not owner_id or not shared_with_user_id:
        raise InvalidRequest("owner_id and shared_with_user_id are required")
    if owner_id == shared_with_user_id:
        raise InvalidRequest("Cannot share a survey with its owner")
    _insert_or_update(db, ShareGrant, {
        "survey_id": survey_id,
        "owner_id": owner_id,
        "shared_with_user_id": shared_with_user_id,
        "shared_at": _now_utc(),
    }, keys=["survey_id", "shared_with_user_id"],
        only_if=None if is_admin else ShareGrant.owner_id == owner_id)
    db.commit()
    logger.info("Survey %s shared by %s with %s", survey_id, owner_id, shared_with_user_id)
    return find_share(db, survey_id, shared_with_user_id)

@store_operation
def find_share(db: Session, survey_id: int, shared_with_user_id: str) -> Optional[ShareGrant]:
    return db.execute(
        select(ShareGrant).where(ShareGrant.survey_id == survey_id,
                                 ShareGrant.shared_with_user_id == shared_with_user_id)
    ).scalar_one_or_none()

@store_operation
def revoke_share(db: Session, survey_id: int, shared_with_user_id: str, requested_by_user_id: str,
                 is_admin: bool = False) -> None:
    """Delete a grant. Only its owner or an administrator may do so.

    Raises:
        NotFound: no such grant.
        Forbidden: requester is neither the grant's owner nor an administrator.
    """
    grant = find_share(db, survey_id, shared_with_user_id)
    if not grant:
        raise NotFound("Share not found")
    if not is_admin and grant.owner_id != requested_by_user_id:
        raise Forbidden("Only the owner or an administrator can revoke this share")
    db.execute(delete(ShareGrant).where(ShareGrant.id == grant.id))
    db.commit()
    logger.info("Share on survey %s for %s revoked by %s", survey_id, shared_with_user_id, requested_by_user_id)

@store_operation
def list_shares_for(db: Session, survey_id: int, owner_id: Optional[str] = None) -> list[ShareGrant]:
    q = select(ShareGrant).where(ShareGrant.survey_id == survey_id)
    if owner_id is not None:
        q = q.where(ShareGrant.owner_id == owner_id)
    return db.execute(q.order_by(ShareGrant.shared_at, ShareGrant.id)).scalars().all()

@store_operation
def list_shares_received_by(db: Session, user_id: str) -> list[ShareGrant]:
    q = select(ShareGrant).where(ShareGrant.shared_with_user_id == user_id)
    return db.execute(q.order_by(ShareGrant.shared_at.desc(), ShareGrant.id.desc())).scalars().all()
