from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(32), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    links = relationship("SurveyLink", back_populates="survey", cascade="all, delete-orphan")
    responses = relationship("SurveyResponse", back_populates="survey", cascade="all, delete-orphan")
    drafts = relationship("Draft", back_populates="survey", cascade="all, delete-orphan")
    shares = relationship("ShareGrant", back_populates="survey", cascade="all, delete-orphan")

class SurveyLink(Base):
    __tablename__ = "survey_links"
    __table_args__ = (UniqueConstraint("survey_id", "owner_id", name="uq_link_survey_owner"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    owner_id = Column(String(255), nullable=False)
    token = Column(String(512), unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    survey = relationship("Survey", back_populates="links")

class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    owner_id = Column(String(255), nullable=True)
    submitted_by = Column(String(255), nullable=True)
    raw_answers = Column(JSON, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="responses")

class Draft(Base):
    __tablename__ = "drafts"
    __table_args__ = (UniqueConstraint("survey_id", "owner_id", name="uq_draft_survey_owner"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    owner_id = Column(String(255), nullable=False)
    saved_by_user_id = Column(String(255), nullable=False)
    answers = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="drafts")

class ShareGrant(Base):
    __tablename__ = "share_grants"
    __table_args__ = (UniqueConstraint("survey_id", "shared_with_user_id", name="uq_share_survey_user"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    owner_id = Column(String(255), nullable=False)
    shared_with_user_id = Column(String(255), index=True, nullable=False)
    shared_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="shares")
