# schemas.py
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal

ADMINISTRATOR = "administrator"
RESPONDENT = "respondent"

class Identity(BaseModel):
    user_id: str
    role: Literal["administrator", "respondent"] = RESPONDENT

    @property
    def is_admin(self) -> bool:
        return self.role == ADMINISTRATOR

# --- derived survey structure ---

class Question(BaseModel):
    name: str
    title: str
    type: str = "text"
    choices: Optional[List[Any]] = None   # None: not a choice question; []: no choices declared

class QAPair(BaseModel):
    question: str
    answer: str
    field_name: str

class AssembledResponse(BaseModel):
    id: int
    submitted_at: datetime
    qa: List[QAPair]

class AccessDecision(BaseModel):
    granted: bool
    role: Literal["owner", "shared", "none"]
    effective_owner_id: Optional[str] = None
    survey_id: int

# --- request bodies ---

class SurveySave(BaseModel):
    id: Optional[str] = None              # internal id or public token of a survey to overwrite
    title: Optional[str] = None
    definition: Optional[Dict[str, Any]] = None

class LinkCreate(BaseModel):
    survey_id: str
    owner_id: str

class AnswersPayload(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)

class ShareCreate(BaseModel):
    shared_with_user_id: str
    owner_id: Optional[str] = None        # required when an administrator grants

# --- responses ---

class SurveySummary(BaseModel):
    id: int
    public_id: str
    title: str
    created_at: Optional[datetime]
    response_count: int = 0

class SurveyExport(BaseModel):
    id: int
    public_id: str
    title: str
    definition: Dict[str, Any]
    created_at: Optional[datetime]
    class Config:
        from_attributes = True

class DraftOut(BaseModel):
    survey_id: int
    owner_id: str
    saved_by_user_id: str
    answers: Dict[str, Any]
    updated_at: datetime
    class Config:
        from_attributes = True

class ShareOut(BaseModel):
    survey_id: int
    owner_id: str
    shared_with_user_id: str
    shared_at: datetime
    class Config:
        from_attributes = True

class PublicSurveyView(BaseModel):
    survey: SurveyExport
    access: AccessDecision
    draft: Optional[Dict[str, Any]] = None
