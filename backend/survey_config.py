# Survey structure: the active config, its sections and problems.
from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aggregation import (
    ProblemInfo, QUESTION_TYPES, CHOICE_TYPES, MULTIPLE_CHOICE, SLIDER,
    encode_choices, normalize_question_type,
)
from errors import ValidationError, NotFoundError, ConflictError, StorageError
from models import SurveyConfig, Section, Problem

logger = logging.getLogger(__name__)

# Sections without an explicit color take one from here by position.
PALETTE = (
    "#3b82f6",  # blue
    "#10b981",  # green
    "#8b5cf6",  # purple
    "#f59e0b",  # amber
    "#ef4444",  # red
    "#06b6d4",  # cyan
    "#ec4899",  # pink
    "#84cc16",  # lime
    "#f97316",  # orange
    "#14b8a6",  # teal
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_ALLOC_ATTEMPTS = 5


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def section_color(color: Optional[str], index: int) -> str:
    return color or PALETTE[index % len(PALETTE)]


# ---------------------------------------------
# Options (JSON text column)
# ---------------------------------------------
def parse_options(raw: Optional[str], problem_id: Optional[int] = None) -> tuple[str, ...]:
    """Decode stored options, tolerating stray control characters.

    Unreadable values are logged and treated as an empty list.
    """
    if not raw:
        return ()
    try:
        data = json.loads(raw)
    except ValueError:
        try:
            data = json.loads(clean_options_text(raw))
        except ValueError:
            logger.warning("Problem %s has unreadable options text; ignoring it", problem_id)
            return ()
    if not isinstance(data, list):
        logger.warning("Problem %s options are not a list; ignoring them", problem_id)
        return ()
    return tuple(str(x) for x in data)


def clean_options_text(raw: str) -> str:
    return _CONTROL_CHARS.sub("", raw).strip()


def dump_options(options: Optional[list[str]]) -> Optional[str]:
    if not options:
        return None
    return json.dumps(list(options), ensure_ascii=False)


def _check_problem_shape(question_type: Optional[str], options: Optional[list[str]]) -> str:
    qtype = normalize_question_type(question_type)
    if qtype not in QUESTION_TYPES:
        raise ValidationError(f"Unknown question type '{qtype}'")
    opts = [o.strip() for o in (options or [])]
    if qtype in CHOICE_TYPES and not opts:
        raise ValidationError(f"Question type '{qtype}' needs at least one option")
    if any(not o for o in opts):
        raise ValidationError("Options must not be blank")
    if len(set(opts)) != len(opts):
        raise ValidationError("Options must be unique")
    if qtype == MULTIPLE_CHOICE:
        try:
            encode_choices(opts)
        except ValueError as e:
            raise ValidationError(str(e))
    return qtype


# ---------------------------------------------
# Resolution
# ---------------------------------------------
@dataclass(frozen=True)
class ResolvedSection:
    id: str
    name: str
    color: str
    display_order: int
    problems: tuple[ProblemInfo, ...]


@dataclass(frozen=True)
class ResolvedConfig:
    """Snapshot of one config, handed through a whole request."""
    id: str
    title: str
    description: Optional[str]
    sections: tuple[ResolvedSection, ...]

    @property
    def problems(self) -> list[ProblemInfo]:
        return [p for s in self.sections for p in s.problems]

    @property
    def catalog(self) -> dict[int, ProblemInfo]:
        return {p.id: p for p in self.problems}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "sections": [{
                "id": s.id,
                "name": s.name,
                "color": s.color,
                "problems": [{
                    "id": p.id,
                    "title": p.title,
                    "questionType": p.question_type,
                    "options": list(p.options) if p.options else None,
                } for p in s.problems],
            } for s in self.sections],
        }


def get_active_config(db: Session) -> SurveyConfig:
    cfg = db.execute(
        select(SurveyConfig)
        .where(SurveyConfig.is_active == True)
        .order_by(SurveyConfig.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if cfg is None:
        raise NotFoundError("No active configuration found")
    return cfg


def resolve_config(db: Session, config_id: Optional[str] = None) -> ResolvedConfig:
    """Load a config (the active one by default) as a nested value object.

    Raises:
        NotFoundError: no such config, or no active config.
    """
    if config_id:
        cfg = db.get(SurveyConfig, config_id)
        if cfg is None:
            raise NotFoundError("Config not found")
    else:
        cfg = get_active_config(db)

    sections = db.execute(
        select(Section).where(Section.config_id == cfg.id).order_by(Section.display_order)
    ).scalars().all()

    resolved = []
    for index, s in enumerate(sections):
        problems = db.execute(
            select(Problem).where(Problem.section_id == s.id).order_by(Problem.display_order)
        ).scalars().all()
        resolved.append(ResolvedSection(
            id=s.id,
            name=s.name,
            color=section_color(s.color, index),
            display_order=s.display_order,
            problems=tuple(
                ProblemInfo(
                    id=p.id,
                    title=p.title,
                    group=s.name,
                    question_type=normalize_question_type(p.question_type),
                    options=parse_options(p.options, p.id),
                ) for p in problems
            ),
        ))
    return ResolvedConfig(id=cfg.id, title=cfg.title, description=cfg.description, sections=tuple(resolved))


# ---------------------------------------------
# Configs
# ---------------------------------------------
def create_config(db: Session, title: str, description: Optional[str] = None,
                  sections: Optional[list[dict]] = None, activate: bool = True,
                  config_id: Optional[str] = None) -> SurveyConfig:
    """Create a new config version with its sections and problems.

    `sections` items look like {id?, name, color?, problems: [{id?, title,
    questionType?, options?}]}. Problems without an id get fresh ones; like
    add_problem, allocation runs again if a concurrent writer takes them first.

    Raises:
        ValidationError: missing title/name or malformed problem.
        ConflictError: an explicit id is already in use.
        StorageError: no free problem ids after repeated collisions.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    cfg_id = config_id or f"config-{uuid.uuid4().hex[:12]}"

    sections = sections or []
    section_ids = [s["id"] for s in sections if s.get("id")]
    if len(set(section_ids)) != len(section_ids):
        raise ConflictError("Duplicate section IDs in config payload")
    explicit = [p["id"] for s in sections for p in s.get("problems", []) if p.get("id") is not None]
    if len(set(explicit)) != len(explicit):
        raise ConflictError("Duplicate problem IDs in config payload")
    _check_free_ids(db, cfg_id, section_ids, explicit)

    # validate everything before touching the session
    for s in sections:
        if not (s.get("name") or "").strip():
            raise ValidationError("Section name is required")
        for p in s.get("problems", []):
            if not (p.get("title") or "").strip():
                raise ValidationError("Problem title is required")
            _check_problem_shape(p.get("questionType"), p.get("options"))

    for _ in range(_ALLOC_ATTEMPTS):
        cfg = _add_config_rows(db, cfg_id, title, description, sections, activate, explicit)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            # an explicit id lost the race: nothing to retry
            _check_free_ids(db, cfg_id, section_ids, explicit)
            logger.warning("Problem ids for config %s taken concurrently; retrying", cfg_id)
            continue
        logger.info("Created config %s (%d sections, active=%s)", cfg_id, len(sections), activate)
        return cfg

    raise StorageError("Failed to allocate unique problem IDs")


def _check_free_ids(db: Session, cfg_id: str, section_ids: list[str], problem_ids: list[int]) -> None:
    if db.get(SurveyConfig, cfg_id):
        raise ConflictError(f"Config ID {cfg_id} already exists")
    for sid in section_ids:
        if db.get(Section, sid):
            raise ConflictError(f"Section ID {sid} already exists")
    for pid in problem_ids:
        if db.get(Problem, pid):
            raise ConflictError(f"Problem ID {pid} already exists")


def _add_config_rows(db: Session, cfg_id: str, title: str, description: Optional[str],
                     sections: list[dict], activate: bool, explicit: list[int]) -> SurveyConfig:
    next_id = max([allocate_problem_id(db) - 1, *explicit]) + 1
    if activate:
        db.execute(update(SurveyConfig).values(is_active=False))
    now = _now_utc()
    cfg = SurveyConfig(id=cfg_id, title=title, description=description, is_active=activate,
                       created_at=now, updated_at=now)
    db.add(cfg)

    for s_index, s in enumerate(sections):
        sec = Section(id=s.get("id") or f"section-{uuid.uuid4().hex[:12]}", config_id=cfg_id,
                      name=s["name"].strip(), color=s.get("color"), display_order=s_index)
        db.add(sec)
        for p_index, p in enumerate(s.get("problems", [])):
            pid = p.get("id")
            if pid is None:
                pid = next_id
                next_id += 1
            options = [o.strip() for o in p.get("options") or []]
            db.add(Problem(id=pid, section_id=sec.id, title=p["title"].strip(),
                           question_type=normalize_question_type(p.get("questionType")),
                           options=dump_options(options), display_order=p_index))
    return cfg


# ---------------------------------------------
# Sections
# ---------------------------------------------
def list_sections(db: Session) -> list[dict]:
    try:
        cfg = get_active_config(db)
    except NotFoundError:
        return []
    rows = db.execute(
        select(Section).where(Section.config_id == cfg.id).order_by(Section.display_order)
    ).scalars().all()
    return [{"id": s.id, "name": s.name, "color": section_color(s.color, i), "displayOrder": s.display_order}
            for i, s in enumerate(rows)]


def add_section(db: Session, name: str, color: Optional[str] = None, display_order: Optional[int] = None,
                config_id: Optional[str] = None, section_id: Optional[str] = None) -> Section:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Section name is required")
    cfg = db.get(SurveyConfig, config_id) if config_id else get_active_config(db)
    if cfg is None:
        raise NotFoundError("Config not found")
    sid = section_id or f"section-{uuid.uuid4().hex[:12]}"
    if db.get(Section, sid):
        raise ConflictError(f"Section ID {sid} already exists")
    if display_order is None:
        display_order = db.execute(
            select(func.count()).select_from(Section).where(Section.config_id == cfg.id)
        ).scalar_one()
    row = Section(id=sid, config_id=cfg.id, name=name, color=color or None, display_order=display_order)
    db.add(row)
    db.commit()
    return row


def update_section(db: Session, section_id: str, name: Optional[str] = None, color: Optional[str] = None,
                   display_order: Optional[int] = None) -> Section:
    row = db.get(Section, section_id)
    if row is None:
        raise NotFoundError("Section not found")
    if name is not None:
        if not name.strip():
            raise ValidationError("Section name is required")
        row.name = name.strip()
    if color is not None:
        row.color = color or None
    if display_order is not None:
        row.display_order = display_order
    db.commit()
    return row


def delete_section(db: Session, section_id: str) -> None:
    """Delete a section and its problems; stored answers are kept."""
    row = db.get(Section, section_id)
    if row is None:
        raise NotFoundError("Section not found")
    db.delete(row)
    db.commit()


# ---------------------------------------------
# Problems
# ---------------------------------------------
def list_problems(db: Session, section_id: str) -> list[dict]:
    if db.get(Section, section_id) is None:
        raise NotFoundError("Section not found")
    rows = db.execute(
        select(Problem).where(Problem.section_id == section_id).order_by(Problem.display_order)
    ).scalars().all()
    return [{
        "id": p.id,
        "title": p.title,
        "questionType": normalize_question_type(p.question_type),
        "options": list(parse_options(p.options, p.id)) or None,
        "displayOrder": p.display_order,
    } for p in rows]


def problem_catalog(db: Session) -> dict[int, ProblemInfo]:
    """Every stored problem, whichever config it belongs to, keyed by id."""
    rows = db.execute(select(Problem, Section.name).join(Section, Problem.section_id == Section.id)).all()
    return {
        p.id: ProblemInfo(id=p.id, title=p.title, group=section_name,
                          question_type=normalize_question_type(p.question_type),
                          options=parse_options(p.options, p.id))
        for p, section_name in rows
    }


def allocate_problem_id(db: Session) -> int:
    """Next free problem id: one past the highest id in any section."""
    current = db.execute(select(func.max(Problem.id))).scalar()
    return (current or 0) + 1


def add_problem(db: Session, section_id: str, title: str, question_type: Optional[str] = SLIDER,
                options: Optional[list[str]] = None, display_order: Optional[int] = None,
                problem_id: Optional[int] = None) -> Problem:
    """Insert a problem, allocating its id when none is given.

    Allocation and insert commit together; if another writer takes the same
    id first the primary key rejects ours and allocation runs again.

    Raises:
        ConflictError: explicit id already in use.
        StorageError: no free id after repeated collisions.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    qtype = _check_problem_shape(question_type, options)
    if db.get(Section, section_id) is None:
        raise NotFoundError("Section not found")
    if display_order is None:
        display_order = db.execute(
            select(func.count()).select_from(Problem).where(Problem.section_id == section_id)
        ).scalar_one()
    stored_options = dump_options([o.strip() for o in options] if options else None)

    if problem_id is not None:
        if db.get(Problem, problem_id):
            raise ConflictError(f"Problem ID {problem_id} already exists")
        row = Problem(id=problem_id, section_id=section_id, title=title, question_type=qtype,
                      options=stored_options, display_order=display_order)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictError(f"Problem ID {problem_id} already exists")
        return row

    for _ in range(_ALLOC_ATTEMPTS):
        pid = allocate_problem_id(db)
        row = Problem(id=pid, section_id=section_id, title=title, question_type=qtype,
                      options=stored_options, display_order=display_order)
        db.add(row)
        try:
            db.commit()
            logger.info("Allocated problem id %d in section %s", pid, section_id)
            return row
        except IntegrityError:
            db.rollback()
            logger.warning("Problem id %d taken concurrently; retrying", pid)
            continue

    raise StorageError("Failed to allocate a unique problem ID")


def update_problem(db: Session, problem_id: int, title: Optional[str] = None,
                   question_type: Optional[str] = None, options: Optional[list[str]] = None,
                   display_order: Optional[int] = None) -> Problem:
    row = db.get(Problem, problem_id)
    if row is None:
        raise NotFoundError("Problem not found")
    if title is not None:
        if not title.strip():
            raise ValidationError("Title is required")
        row.title = title.strip()
    if question_type is not None or options is not None:
        new_type = question_type if question_type is not None else row.question_type
        new_options = options if options is not None else list(parse_options(row.options, row.id))
        row.question_type = _check_problem_shape(new_type, new_options)
        row.options = dump_options([o.strip() for o in new_options] if new_options else None)
    if display_order is not None:
        row.display_order = display_order
    db.commit()
    return row


def delete_problem(db: Session, problem_id: int) -> None:
    row = db.get(Problem, problem_id)
    if row is None:
        raise NotFoundError("Problem not found")
    db.delete(row)
    db.commit()
