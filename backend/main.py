import os
import logging
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import pandas as pd

from db import Base, engine, get_db
from errors import SurveyServiceError, NotFound, Forbidden, InvalidRequest
from schemas import *
from security import current_identity, verify_admin, read_link_token
from access import require_access
from survey_schema import assemble_responses
import store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Survey Share API")

origins = os.getenv("ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


@app.exception_handler(SurveyServiceError)
def survey_error_handler(request: Request, exc: SurveyServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _survey_export(s) -> dict:
    return {"id": s.id, "public_id": s.public_id, "title": s.title,
            "definition": s.definition, "created_at": s.created_at}

@app.get("/health")
def health():
    """Basic readiness check.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Admin: survey catalogue
# ------------------------
@app.post("/admin/surveys", dependencies=[Depends(verify_admin)])
def save_survey(payload: SurveySave, db: Session = Depends(get_db)):
    """Create a survey, or overwrite the one named by `id` (internal id or token).

    Args:
        payload (SurveySave): {id?, title?, definition}.
        db (Session): DB session.

    Returns:
        dict: {"id", "public_id", "created"}

    Raises:
        HTTPException: 400 if definition missing.
    """
    if payload.definition is None:
        raise HTTPException(status_code=400, detail="Survey definition is required")
    survey, created = store.save_survey(db, payload.definition, title=payload.title, ref=payload.id)
    return {"id": survey.id, "public_id": survey.public_id, "created": created}

@app.get("/admin/surveys", response_model=list[SurveySummary], dependencies=[Depends(verify_admin)])
def list_surveys(db: Session = Depends(get_db)):
    """List surveys newest first with their response counts."""
    return [
        {"id": s.id, "public_id": s.public_id, "title": s.title or store.DEFAULT_TITLE,
         "created_at": s.created_at, "response_count": n}
        for s, n in store.list_surveys(db)
    ]

@app.get("/admin/surveys/{survey_ref}", response_model=SurveyExport, dependencies=[Depends(verify_admin)])
def export_survey(survey_ref: str, db: Session = Depends(get_db)):
    """Return a survey's definition for re-editing or backup.

    Raises:
        NotFound: unknown survey.
    """
    return _survey_export(store.resolve_canonical_survey(db, survey_ref))

@app.delete("/admin/surveys/{survey_ref}", dependencies=[Depends(verify_admin)])
def delete_survey(survey_ref: str, db: Session = Depends(get_db)):
    """Hard-delete a survey; links, responses, drafts and shares go with it.

    Returns:
        dict: {"ok": True}
    """
    store.delete_survey(db, store.resolve_canonical_survey(db, survey_ref))
    return {"ok": True}

# ------------------------
# Admin: per-respondent link (create or reuse)
# ------------------------
@app.post("/admin/links", dependencies=[Depends(verify_admin)])
def create_link(link: LinkCreate, db: Session = Depends(get_db)):
    """Mint (or reuse) the link that makes `owner_id` owner-of-record for a survey.

    Args:
        link (LinkCreate): {survey_id, owner_id}.
        db (Session): DB session.

    Returns:
        dict: {"token": str, "url": str, "existing": bool}
    """
    survey = store.resolve_canonical_survey(db, link.survey_id)
    row, created = store.get_or_create_link(db, survey, link.owner_id)
    return {"token": row.token, "url": f"/take/{row.token}", "existing": not created}

# ------------------------
# Admin: review responses
# ------------------------
@app.get("/admin/surveys/{survey_ref}/responses", response_model=list[AssembledResponse],
         dependencies=[Depends(verify_admin)])
def survey_responses(survey_ref: str, db: Session = Depends(get_db)):
    """Submitted responses, newest first, with each field decoded to its question."""
    survey = store.resolve_canonical_survey(db, survey_ref)
    return assemble_responses(survey.definition, store.list_responses(db, survey.id))

@app.get("/admin/surveys/{survey_ref}/export.csv", dependencies=[Depends(verify_admin)])
def export_csv(survey_ref: str, db: Session = Depends(get_db)):
    """Export decoded responses as CSV, one row per answered field.

    Returns:
        Response: text/csv attachment `survey_<public_id>_responses.csv`.
    """
    survey = store.resolve_canonical_survey(db, survey_ref)
    rows = [
        {"response_id": r.id, "submitted_at": r.submitted_at, "field_name": qa.field_name,
         "question": qa.question, "answer": qa.answer}
        for r in assemble_responses(survey.definition, store.list_responses(db, survey.id))
        for qa in r.qa
    ]
    df = pd.DataFrame(rows, columns=["response_id", "submitted_at", "field_name", "question", "answer"])
    csv_bytes = df.to_csv(index=False).encode("utf-8")
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename=survey_{survey.public_id}_responses.csv"})

# ------------------------
# Public: render a survey for a respondent
# ------------------------
def _public_view(db: Session, survey_ref: str, identity: Identity, owner: Optional[str]) -> dict:
    decision = require_access(db, survey_ref, identity.user_id, owner)
    survey = store.resolve_canonical_survey(db, decision.survey_id)
    try:
        draft = store.load_draft(db, decision.survey_id, decision.effective_owner_id).answers
    except NotFound:
        draft = None
    return {"survey": _survey_export(survey), "access": decision, "draft": draft}

@app.get("/public/links/{token}", response_model=PublicSurveyView)
def open_link(token: str, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Open a per-respondent link.

    Raises:
        HTTPException: 404 if the token is invalid.
        Forbidden: caller is neither the link's owner nor shared into it.
    """
    decoded = read_link_token(token)
    if not decoded:
        raise HTTPException(404, "Link invalid")
    survey_public_id, owner_id = decoded
    return _public_view(db, survey_public_id, identity, owner_id)

@app.get("/public/surveys/{survey_ref}", response_model=PublicSurveyView)
def open_survey(survey_ref: str, owner: Optional[str] = None,
                identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Render a survey for the caller, for their own link owner or via a share."""
    return _public_view(db, survey_ref, identity, owner)

# ------------------------
# Respondent: drafts
# ------------------------
@app.get("/surveys/{survey_ref}/draft", response_model=DraftOut)
def get_draft(survey_ref: str, owner: Optional[str] = None,
              identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Load the effective owner's draft.

    Raises:
        Forbidden: access denied.
        NotFound: survey or draft missing.
    """
    decision = require_access(db, survey_ref, identity.user_id, owner)
    return store.load_draft(db, decision.survey_id, decision.effective_owner_id)

@app.put("/surveys/{survey_ref}/draft")
def put_draft(survey_ref: str, body: AnswersPayload, owner: Optional[str] = None,
              identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Save the draft under the effective owner; the caller is recorded as writer.

    Returns:
        dict: {"created": bool, "owner_id": str, "role": str}
    """
    decision = require_access(db, survey_ref, identity.user_id, owner)
    result = store.save_draft(db, decision.survey_id, decision.effective_owner_id, identity.user_id, body.answers)
    return {**result, "owner_id": decision.effective_owner_id, "role": decision.role}

# ------------------------
# Respondent: submit
# ------------------------
@app.post("/surveys/{survey_ref}/responses")
def submit_response(survey_ref: str, body: AnswersPayload, owner: Optional[str] = None,
                    identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Record an immutable response attributed to the effective owner.

    Returns:
        dict: {"ok": True, "response_id": int}
    """
    decision = require_access(db, survey_ref, identity.user_id, owner)
    row = store.create_response(db, decision.survey_id, body.answers,
                                owner_id=decision.effective_owner_id, submitted_by=identity.user_id)
    return {"ok": True, "response_id": row.id}

# ------------------------
# Respondent: sharing
# ------------------------
@app.post("/surveys/{survey_ref}/shares", response_model=ShareOut)
def create_share(survey_ref: str, body: ShareCreate,
                 identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Share the owner's draft on this survey with another respondent.

    Respondents share their own survey instance and must be its owner-of-record;
    administrators must name the owner.

    Raises:
        Forbidden: respondent has no link for this survey.
        InvalidRequest: administrator omitted owner_id.
    """
    survey = store.resolve_canonical_survey(db, survey_ref)
    if identity.is_admin:
        if not body.owner_id:
            raise InvalidRequest("owner_id is required")
        owner_id = body.owner_id
    else:
        if body.owner_id and body.owner_id != identity.user_id:
            raise Forbidden("Respondents can only share their own answers")
        if not store.is_owner_of_record(db, survey.id, identity.user_id):
            raise Forbidden("You are not the owner of this survey instance")
        owner_id = identity.user_id
    return store.grant_share(db, survey.id, owner_id, body.shared_with_user_id, is_admin=identity.is_admin)

@app.get("/surveys/{survey_ref}/shares", response_model=list[ShareOut])
def list_shares(survey_ref: str, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Grants on a survey: all of them for administrators, the caller's own otherwise."""
    survey = store.resolve_canonical_survey(db, survey_ref)
    return store.list_shares_for(db, survey.id, owner_id=None if identity.is_admin else identity.user_id)

@app.delete("/surveys/{survey_ref}/shares/{user_id}")
def delete_share(survey_ref: str, user_id: str,
                 identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Revoke the grant held by `user_id`.

    Returns:
        dict: {"ok": True}
    """
    survey = store.resolve_canonical_survey(db, survey_ref)
    store.revoke_share(db, survey.id, user_id, identity.user_id, is_admin=identity.is_admin)
    return {"ok": True}

@app.get("/shares/received", response_model=list[ShareOut])
def shares_received(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    """Surveys other respondents have shared with the caller."""
    return store.list_shares_received_by(db, identity.user_id)
