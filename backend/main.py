import os
import logging
from typing import Optional
from datetime import datetime, timezone
from fastapi import FastAPI, Depends, Request, Response, Query
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import pandas as pd

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from db import get_db, init_db
from models import SurveySession, Submission
from schemas import *
from security import verify_admin
from errors import SurveyError, ValidationError, NotFoundError, UpstreamServiceError
from aggregation import numeric_aggregate, choice_distribution, rank_by_priority, label_responses
from summarizer import summarize, is_configured
import sessions as session_service
import survey_config as config_service

app = FastAPI(title="Survey Collection API")

origins = os.getenv("ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()


# ------------------------
# Error handlers
# ------------------------
@app.exception_handler(SurveyError)
async def survey_error_handler(request: Request, exc: SurveyError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())},
    )

@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error"})

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ------------------------
# Serialization helpers
# ------------------------
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def session_out(s: SurveySession) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "description": s.description,
        "createdAt": s.created_at,
        "isActive": bool(s.is_active),
        "isDeleted": bool(s.is_deleted),
        "responseCount": s.response_count or 0,
    }

def submission_out(sub: Submission) -> dict:
    return {
        "id": sub.id,
        "sessionId": sub.session_id,
        "timestamp": _iso(sub.timestamp),
        "respondentName": sub.respondent_name,
        "respondentEmail": sub.respondent_email,
        "notes": sub.notes,
        "responses": [{
            "problemId": r.problem_id,
            "frequency": r.frequency,
            "severity": r.severity,
            "textResponse": r.text_response,
            "selectedIndex": r.selected_index,
        } for r in sub.responses],
    }

def point_out(p) -> dict:
    return {"id": p.id, "x": p.x, "y": p.y, "group": p.group, "title": p.title,
            "count": p.count, "priority": p.priority}

def choice_out(c) -> dict:
    return {
        "id": c.id, "title": c.title, "group": c.group, "questionType": c.question_type,
        "total": c.total, "counts": [{"option": o.option, "count": o.count} for o in c.counts],
    }


@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

@app.get("/health/db")
def health_db(db: Session = Depends(get_db)):
    """Database connectivity probe.

    Returns:
        dict: {"db": "ok"}; a storage failure is reported as 500 by the handler.
    """
    db.execute(text("SELECT 1"))
    return {"db": "ok"}


# ------------------------
# Sessions
# ------------------------
@app.post("/sessions", response_model=SessionOut, dependencies=[Depends(verify_admin)])
def create_session(payload: SessionCreate, db: Session = Depends(get_db)):
    """Create a survey session.

    Args:
        payload (SessionCreate): {name, description?, createdAt?, id?}
        db (Session): DB session.

    Returns:
        SessionOut: the new session, active with responseCount 0.

    Raises:
        ValidationError: blank name. ConflictError: id already used.
    """
    row = session_service.create_session(
        db, payload.name, payload.description, payload.createdAt, payload.id
    )
    return session_out(row)

@app.get("/sessions", response_model=list[SessionOut], dependencies=[Depends(verify_admin)])
def list_sessions(db: Session = Depends(get_db)):
    """List sessions that are not soft-deleted, newest first."""
    return [session_out(s) for s in session_service.list_sessions(db)]

@app.get("/sessions/{session_id}", response_model=SessionOut)
def get_session(session_id: str, db: Session = Depends(get_db)):
    """Fetch one session by id (also returns soft-deleted ones).

    Respondents use this to check whether a survey link still accepts answers.
    """
    return session_out(session_service.get_session(db, session_id))

@app.patch("/sessions/{session_id}", response_model=SessionOut, dependencies=[Depends(verify_admin)])
def update_session(session_id: str, payload: SessionUpdate, db: Session = Depends(get_db)):
    """Start or end a session.

    Args:
        session_id (str): Session id.
        payload (SessionUpdate): {isActive}

    Raises:
        NotFoundError: unknown session. ValidationError: reactivating a deleted session.
    """
    return session_out(session_service.set_session_active(db, session_id, payload.isActive))

@app.delete("/sessions/{session_id}", dependencies=[Depends(verify_admin)])
def delete_session(session_id: str, db: Session = Depends(get_db)):
    """Soft-delete a session; its submissions are retained.

    Returns:
        dict: {"success": True}
    """
    session_service.delete_session(db, session_id)
    return {"success": True}

@app.get("/sessions/{session_id}/submissions", dependencies=[Depends(verify_admin)])
def session_submissions(session_id: str, db: Session = Depends(get_db)):
    """Submissions of one session, newest first (works for soft-deleted sessions).

    Args:
        session_id (str): Session id.
        db (Session): DB session.

    Returns:
        list[dict]: submissions with nested responses.

    Raises:
        NotFoundError: unknown session.
    """
    return [submission_out(s) for s in session_service.list_submissions(db, session_id)]


# ------------------------
# Submissions
# ------------------------
@app.post("/submissions")
def create_submission(payload: SubmissionCreate, db: Session = Depends(get_db)):
    """Store a completed questionnaire.

    Args:
        payload (SubmissionCreate): {submission: {id?, timestamp?, notes?, responses[]}, name?, email?, sessionId?, configId?}
        db (Session): DB session.

    Returns:
        dict: {"success": True, "id": <submission id>}

    Raises:
        ValidationError: empty/malformed responses, question outside the config, or deleted session.
        NotFoundError: unknown session or no active config. ConflictError: duplicate submission id.
    """
    row = session_service.submit_response(
        db, payload.submission, payload.name, payload.email, payload.sessionId, payload.configId
    )
    return {"success": True, "id": row.id}

@app.get("/submissions", dependencies=[Depends(verify_admin)])
def list_submissions(db: Session = Depends(get_db)):
    """All submissions outside soft-deleted sessions, newest first, with responses."""
    return [submission_out(s) for s in session_service.list_submissions(db)]

EXPORT_COLUMNS = [
    "Submission ID", "Session ID", "Timestamp", "Respondent Name", "Respondent Email",
    "Problem ID", "Question", "Section", "Frequency", "Severity", "Answer", "Notes",
]

@app.get("/submissions/export.csv", dependencies=[Depends(verify_admin)])
def export_csv(sessionId: Optional[str] = None, db: Session = Depends(get_db)):
    """Export responses as CSV, one row per answered question.

    Args:
        sessionId (str|None): Restrict to one session; global view otherwise.
        db (Session): DB session.

    Returns:
        Response: text/csv attachment.
    """
    subs = session_service.list_submissions(db, sessionId)
    catalog = config_service.problem_catalog(db)
    rows = []
    for sub in subs:
        for r in label_responses(sub, catalog):
            rows.append([
                sub.id, sub.session_id, _iso(sub.timestamp), sub.respondent_name, sub.respondent_email,
                r["problem_id"], r["question"], r["section"], r["frequency"], r["severity"], r["answer"],
                sub.notes,
            ])
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    # keep ratings as integers; blanks would otherwise turn the column into floats
    int_cols = ["Problem ID", "Frequency", "Severity"]
    df[int_cols] = df[int_cols].astype("Int64")
    csv_bytes = df.to_csv(index=False).encode("utf-8")
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    filename = f"survey-{sessionId}-{stamp}.csv" if sessionId else f"survey-{stamp}.csv"
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename={filename}"})

@app.get("/submissions/{submission_id}", dependencies=[Depends(verify_admin)])
def get_submission(submission_id: str, db: Session = Depends(get_db)):
    """Direct lookup; works for submissions of soft-deleted sessions too."""
    return submission_out(session_service.get_submission(db, submission_id))


# ------------------------
# Aggregates
# ------------------------
def _aggregates(db: Session, session_id: Optional[str], config_id: Optional[str]) -> dict:
    config = config_service.resolve_config(db, config_id)
    subs = session_service.list_submissions(db, session_id)
    return {
        "configId": config.id,
        "sessionId": session_id,
        "submissionCount": len(subs),
        "points": [point_out(p) for p in numeric_aggregate(config.problems, subs)],
        "choices": [choice_out(c) for c in choice_distribution(config.problems, subs)],
    }

@app.get("/aggregates", dependencies=[Depends(verify_admin)])
def aggregates(sessionId: Optional[str] = None, configId: Optional[str] = None,
               db: Session = Depends(get_db)):
    """Per-question averages (slider) and option counts (choice questions).

    Args:
        sessionId (str|None): Restrict to one session; global view otherwise.
        configId (str|None): Question catalog to use; the active config by default.

    Returns:
        dict: {configId, sessionId, submissionCount, points[], choices[]}
    """
    return _aggregates(db, sessionId, configId)

@app.get("/sessions/{session_id}/aggregates", dependencies=[Depends(verify_admin)])
def session_aggregates(session_id: str, configId: Optional[str] = None, db: Session = Depends(get_db)):
    """Aggregates for one session, including a soft-deleted one.

    Args:
        session_id (str): Session id.
        configId (str|None): Question catalog to use; the active config by default.

    Returns:
        dict: {configId, sessionId, submissionCount, points[], choices[]}

    Raises:
        NotFoundError: unknown session or config.
    """
    return _aggregates(db, session_id, configId)

@app.get("/aggregates/priorities", dependencies=[Depends(verify_admin)])
def priorities(sessionId: Optional[str] = None, configId: Optional[str] = None,
               limit: Optional[int] = Query(default=None, ge=1), db: Session = Depends(get_db)):
    """Answered slider questions ranked by frequency x severity."""
    config = config_service.resolve_config(db, configId)
    subs = session_service.list_submissions(db, sessionId)
    ranked = rank_by_priority(numeric_aggregate(config.problems, subs), limit)
    return [point_out(p) for p in ranked]


# ------------------------
# AI summary
# ------------------------
@app.post("/ai-summary", dependencies=[Depends(verify_admin)])
def ai_summary(payload: AISummaryRequest, db: Session = Depends(get_db)):
    """Summarize the top pain points with the language model.

    Args:
        payload (AISummaryRequest): {sessionId?, configId?, limit}
        db (Session): DB session.

    Returns:
        dict: {summary, topProblems[], metadata{responseCount, generatedAt}}

    Raises:
        UpstreamServiceError: feature unconfigured or model call failed (503).
        ValidationError: no responses to summarize.
    """
    if not is_configured():
        raise UpstreamServiceError("AI summary is not configured")
    config = config_service.resolve_config(db, payload.configId)
    subs = session_service.list_submissions(db, payload.sessionId)
    if not subs:
        raise ValidationError("Need at least 1 response to generate a summary")

    top = rank_by_priority(numeric_aggregate(config.problems, subs), payload.limit)
    summary = summarize(top, len(subs))
    return {
        "summary": summary,
        "topProblems": [{
            "id": p.id,
            "title": p.title,
            "section": p.group,
            "avgFrequency": round(p.x, 1),
            "avgSeverity": round(p.y, 1),
            "score": round(p.priority, 1),
        } for p in top],
        "metadata": {
            "responseCount": len(subs),
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        },
    }


# ------------------------
# Survey configuration
# ------------------------
@app.get("/config")
def get_config(db: Session = Depends(get_db)):
    """Active survey structure: sections in order, each with its questions.

    Raises:
        NotFoundError: no active configuration (404).
    """
    return config_service.resolve_config(db).to_dict()

@app.post("/config", dependencies=[Depends(verify_admin)])
def create_config(payload: ConfigCreate, db: Session = Depends(get_db)):
    """Create a new config version, active by default."""
    cfg = config_service.create_config(
        db, payload.title, payload.description,
        sections=[s.model_dump() for s in payload.sections],
        activate=payload.activate, config_id=payload.id,
    )
    return {"success": True, "id": cfg.id}

@app.get("/config/sections")
def list_sections(db: Session = Depends(get_db)):
    """Sections of the active config in display order.

    Returns:
        list[dict]: [{id, name, color, displayOrder}]; empty when no config is active.
    """
    return config_service.list_sections(db)

@app.post("/config/sections", dependencies=[Depends(verify_admin)])
def add_section(payload: SectionCreate, db: Session = Depends(get_db)):
    """Add a section to the active config (or `configId`), appended last by default.

    Raises:
        ValidationError: blank name. ConflictError: id already used. NotFoundError: no such config.
    """
    row = config_service.add_section(
        db, payload.name, payload.color, payload.displayOrder, payload.configId, payload.id
    )
    return {"success": True, "id": row.id}

@app.patch("/config/sections/{section_id}", dependencies=[Depends(verify_admin)])
def update_section(section_id: str, payload: SectionUpdate, db: Session = Depends(get_db)):
    """Rename, recolor or reorder a section; omitted fields are left unchanged."""
    config_service.update_section(db, section_id, payload.name, payload.color, payload.displayOrder)
    return {"success": True}

@app.delete("/config/sections/{section_id}", dependencies=[Depends(verify_admin)])
def delete_section(section_id: str, db: Session = Depends(get_db)):
    """Delete a section and its questions. Stored answers stay and show as "Unknown"."""
    config_service.delete_section(db, section_id)
    return {"success": True}

@app.get("/config/sections/{section_id}/problems")
def list_problems(section_id: str, db: Session = Depends(get_db)):
    """Questions of one section in display order.

    Args:
        section_id (str): Section id.

    Returns:
        list[dict]: [{id, title, questionType, options, displayOrder}]

    Raises:
        NotFoundError: unknown section.
    """
    return config_service.list_problems(db, section_id)

@app.post("/config/problems", dependencies=[Depends(verify_admin)])
def add_problem(payload: ProblemCreate, db: Session = Depends(get_db)):
    """Add a question; its id is allocated past the highest id in any section when omitted.

    Returns:
        dict: {"success": True, "id": <problem id>}

    Raises:
        ConflictError: explicit id already exists (400).
    """
    row = config_service.add_problem(
        db, payload.sectionId, payload.title, payload.questionType, payload.options,
        payload.displayOrder, payload.id,
    )
    return {"success": True, "id": row.id}

@app.patch("/config/problems/{problem_id}", dependencies=[Depends(verify_admin)])
def update_problem(problem_id: int, payload: ProblemUpdate, db: Session = Depends(get_db)):
    """Edit a question; type and options are re-validated together.

    Raises:
        NotFoundError: unknown problem. ValidationError: options do not fit the type.
    """
    config_service.update_problem(
        db, problem_id, payload.title, payload.questionType, payload.options, payload.displayOrder
    )
    return {"success": True}

@app.delete("/config/problems/{problem_id}", dependencies=[Depends(verify_admin)])
def delete_problem(problem_id: int, db: Session = Depends(get_db)):
    """Delete a question. Stored answers stay and show as "Unknown"."""
    config_service.delete_problem(db, problem_id)
    return {"success": True}
