# Session lifecycle and submission intake.
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from aggregation import (
    ProblemInfo, Answer, SliderAnswer, ChoiceAnswer, LabeledSliderAnswer,
    SLIDER, SINGLE_CHOICE, MULTIPLE_CHOICE, SLIDER_LABELED, MIN_RATING, MAX_RATING,
    CHOICE_DELIMITER, decode_choices, encode_answer, normalize_question_type,
)
from errors import ValidationError, NotFoundError, ConflictError, StorageError
from models import SurveySession, Submission, Response
from schemas import SubmissionIn, ResponseIn
from survey_config import resolve_config

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timestamp(value: Optional[datetime]) -> datetime:
    """UTC-aware timestamp; naive values are taken as UTC, missing ones as now."""
    if value is None:
        return _now_utc()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ------------------------
# Sessions
# ------------------------
def create_session(db: Session, name: str, description: Optional[str] = None,
                   created_at: Optional[datetime] = None, session_id: Optional[str] = None) -> SurveySession:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required")
    sid = session_id or f"session-{uuid.uuid4().hex[:12]}"
    if db.get(SurveySession, sid):
        raise ConflictError(f"Session ID {sid} already exists")
    row = SurveySession(
        id=sid,
        name=name,
        description=(description or "").strip() or None,
        created_at=normalize_timestamp(created_at),
        is_active=True,
        is_deleted=False,
        response_count=0,
    )
    db.add(row)
    db.commit()
    logger.info("Created session %s (%s)", sid, name)
    return row


def get_session(db: Session, session_id: str) -> SurveySession:
    row = db.get(SurveySession, session_id)
    if row is None:
        raise NotFoundError("Session not found")
    return row


def list_sessions(db: Session) -> list[SurveySession]:
    return db.execute(
        select(SurveySession)
        .where(SurveySession.is_deleted == False)
        .order_by(SurveySession.created_at.desc())
    ).scalars().all()


def set_session_active(db: Session, session_id: str, active: bool) -> SurveySession:
    row = get_session(db, session_id)
    if active and row.is_deleted:
        raise ValidationError("A deleted session cannot be reactivated")
    row.is_active = active
    db.commit()
    logger.info("Session %s %s", session_id, "activated" if active else "ended")
    return row


def end_session(db: Session, session_id: str) -> SurveySession:
    return set_session_active(db, session_id, False)


def delete_session(db: Session, session_id: str) -> None:
    """Soft delete: hide the session from listings, keep its submissions."""
    row = get_session(db, session_id)
    row.is_deleted = True
    row.is_active = False
    db.commit()
    logger.info("Soft-deleted session %s", session_id)


# ------------------------
# Submissions
# ------------------------
def _check_rating(value: Optional[int], label: str, problem_id: int) -> int:
    if value is None:
        raise ValidationError(f"Problem {problem_id}: {label} is required")
    if not MIN_RATING <= value <= MAX_RATING:
        raise ValidationError(f"Problem {problem_id}: {label} must be between {MIN_RATING} and {MAX_RATING}")
    return value


def parse_answer(problem: ProblemInfo, r: ResponseIn) -> Answer:
    """Validate one incoming response against its problem and build the answer variant.

    Raises:
        ValidationError: the response does not fit the question type.
    """
    qtype = normalize_question_type(problem.question_type)
    pid = problem.id

    if qtype == SLIDER:
        return SliderAnswer(
            frequency=_check_rating(r.frequency, "frequency", pid),
            severity=_check_rating(r.severity, "severity", pid),
        )

    if qtype == SLIDER_LABELED:
        # older clients send the chosen position in `frequency`
        index = r.selectedIndex if r.selectedIndex is not None else r.frequency
        if index is None:
            raise ValidationError(f"Problem {pid}: a selection is required")
        if index < 1 or (problem.options and index > len(problem.options)):
            raise ValidationError(f"Problem {pid}: selection {index} is out of range")
        return LabeledSliderAnswer(selected_index=index)

    if r.selectedOptions is not None:
        selected = [s for s in r.selectedOptions if s and s.strip()]
    elif qtype == MULTIPLE_CHOICE:
        selected = decode_choices(r.textResponse)
    else:
        selected = [r.textResponse] if r.textResponse else []
    selected = list(dict.fromkeys(selected))

    if not selected:
        raise ValidationError(f"Problem {pid}: an option must be selected")
    if qtype == SINGLE_CHOICE and len(selected) > 1:
        raise ValidationError(f"Problem {pid}: only one option may be selected")
    if any(CHOICE_DELIMITER in s for s in selected):
        raise ValidationError(f"Problem {pid}: options must not contain '{CHOICE_DELIMITER}'")
    if problem.options:
        unknown = [s for s in selected if s not in problem.options]
        if unknown:
            raise ValidationError(f"Problem {pid}: unknown option(s) {unknown}")
    return ChoiceAnswer(selected=tuple(selected))


def submit_response(db: Session, submission: SubmissionIn, name: Optional[str] = None,
                    email: Optional[str] = None, session_id: Optional[str] = None,
                    config_id: Optional[str] = None) -> Submission:
    """Store one respondent's answers and refresh the owning session's count.

    Answers are checked against one resolved config (the active one unless
    config_id is given). The submission, its responses and the count update
    commit together.

    Raises:
        ValidationError: no responses, problem outside the config, malformed answer, deleted session.
        NotFoundError: session_id names no session, or no config to answer.
        ConflictError: submission id already used.
    """
    if not submission.responses:
        raise ValidationError("A submission needs at least one response")

    if session_id:
        owner = get_session(db, session_id)
        if owner.is_deleted:
            raise ValidationError("Session has been deleted")

    ids = [r.problemId for r in submission.responses]
    if len(set(ids)) != len(ids):
        raise ValidationError("Each problem may be answered only once per submission")
    config = resolve_config(db, config_id)
    problems = config.catalog
    missing = sorted(set(ids) - problems.keys())
    if missing:
        raise ValidationError(f"Unknown problem id(s) for config {config.id}: {missing}")
    answers = [(r.problemId, parse_answer(problems[r.problemId], r)) for r in submission.responses]

    sub_id = submission.id or uuid.uuid4().hex
    if db.get(Submission, sub_id):
        raise ConflictError(f"Submission ID {sub_id} already exists")

    row = Submission(
        id=sub_id,
        session_id=session_id or None,
        timestamp=normalize_timestamp(submission.timestamp),
        respondent_name=(name or "").strip() or None,
        respondent_email=(email or "").strip() or None,
        notes=submission.notes or None,
    )
    for problem_id, answer in answers:
        row.responses.append(Response(problem_id=problem_id, **encode_answer(answer)))

    try:
        db.add(row)
        db.flush()
        if session_id:
            # count in the same statement as the write so concurrent submits cannot lose updates
            count_q = (
                select(func.count()).select_from(Submission)
                .where(Submission.session_id == session_id)
                .scalar_subquery()
            )
            db.execute(
                update(SurveySession)
                .where(SurveySession.id == session_id)
                .values(response_count=count_q)
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Submission ID {sub_id} already exists")
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to store submission %s", sub_id)
        raise StorageError("Failed to store submission")

    logger.info("Stored submission %s (%d responses, session=%s)", sub_id, len(answers), session_id)
    return row


def list_submissions(db: Session, session_id: Optional[str] = None) -> list[Submission]:
    """Submissions newest first, with responses loaded.

    Without a session id this is the global view, which leaves out
    submissions of soft-deleted sessions. With one, the session is looked up
    directly and its submissions are returned even if it was deleted.
    """
    q = select(Submission).options(selectinload(Submission.responses))
    if session_id is not None:
        get_session(db, session_id)
        q = q.where(Submission.session_id == session_id)
    else:
        q = q.outerjoin(SurveySession, Submission.session_id == SurveySession.id).where(
            or_(Submission.session_id.is_(None), SurveySession.is_deleted == False)
        )
    return db.execute(q.order_by(Submission.timestamp.desc())).scalars().all()


def get_submission(db: Session, submission_id: str) -> Submission:
    row = db.execute(
        select(Submission).options(selectinload(Submission.responses)).where(Submission.id == submission_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Submission not found")
    return row
