from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

class SurveySession(Base):
    __tablename__ = "sessions"
    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    response_count = Column(Integer, nullable=False, default=0)
    submissions = relationship("Submission", back_populates="session")

class Submission(Base):
    __tablename__ = "submissions"
    id = Column(String(64), primary_key=True, index=True)
    session_id = Column(String(64), ForeignKey("sessions.id"), index=True, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    respondent_name = Column(String(255), nullable=True)
    respondent_email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    session = relationship("SurveySession", back_populates="submissions")
    responses = relationship("Response", back_populates="submission", cascade="all, delete-orphan",
                             order_by="Response.id")

class Response(Base):
    __tablename__ = "responses"
    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(String(64), ForeignKey("submissions.id", ondelete="CASCADE"), index=True, nullable=False)
    # no FK: historical answers outlive deleted or superseded problems
    problem_id = Column(Integer, index=True, nullable=False)
    frequency = Column(Integer, nullable=True)
    severity = Column(Integer, nullable=True)
    text_response = Column(Text, nullable=True)
    selected_index = Column(Integer, nullable=True)
    submission = relationship("Submission", back_populates="responses")

class SurveyConfig(Base):
    __tablename__ = "configs"
    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    sections = relationship("Section", back_populates="config", cascade="all, delete-orphan",
                            order_by="Section.display_order")

class Section(Base):
    __tablename__ = "sections"
    id = Column(String(64), primary_key=True, index=True)
    config_id = Column(String(64), ForeignKey("configs.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    color = Column(String(32), nullable=True)
    display_order = Column(Integer, nullable=False, default=0)
    config = relationship("SurveyConfig", back_populates="sections")
    problems = relationship("Problem", back_populates="section", cascade="all, delete-orphan",
                            order_by="Problem.display_order")

class Problem(Base):
    __tablename__ = "problems"
    # allocated explicitly (max + 1), unique across every section and config
    id = Column(Integer, primary_key=True, autoincrement=False)
    section_id = Column(String(64), ForeignKey("sections.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(Text, nullable=False)
    question_type = Column(String(32), nullable=False, default="slider")
    options = Column(Text, nullable=True)  # JSON list, order significant
    display_order = Column(Integer, nullable=False, default=0)
    section = relationship("Section", back_populates="problems")
