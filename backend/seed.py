"""Seed the survey structure and repair stored option text.

Usage:
    python seed.py path/to/survey-config.json
    python seed.py --inactive path/to/survey-config.json
    python seed.py --repair-options
"""
import argparse
import json
import logging
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from db import SessionLocal, init_db
from models import Problem
from survey_config import create_config, clean_options_text

logger = logging.getLogger(__name__)


def seed_config(db: Session, data: dict, activate: bool = True) -> str:
    """Create a config from {title, description, sections: [...]} and return its id."""
    cfg = create_config(
        db,
        data.get("title", ""),
        data.get("description"),
        sections=data.get("sections", []),
        activate=activate,
        config_id=data.get("id"),
    )
    return cfg.id


def repair_options(db: Session) -> int:
    """Rewrite options text that only parses once control characters are stripped.

    Returns the number of problems fixed; unrecoverable values are logged and left as they are.
    """
    fixed = 0
    rows = db.execute(select(Problem).where(Problem.options.is_not(None))).scalars().all()
    for p in rows:
        try:
            json.loads(p.options)
            continue
        except ValueError:
            pass
        cleaned = clean_options_text(p.options)
        try:
            json.loads(cleaned)
        except ValueError:
            logger.warning("Problem %s options still unreadable after cleaning; reseed it", p.id)
            continue
        p.options = cleaned
        fixed += 1
        logger.info("Repaired options of problem %s", p.id)
    db.commit()
    return fixed


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("config", nargs="?", type=Path, help="JSON file describing the survey")
    parser.add_argument("--inactive", action="store_true", help="store the config without activating it")
    parser.add_argument("--repair-options", action="store_true", help="fix corrupted options text")
    args = parser.parse_args()
    if not args.config and not args.repair_options:
        parser.error("give a config file or --repair-options")

    init_db()
    with SessionLocal() as db:
        if args.config:
            data = json.loads(args.config.read_text(encoding="utf-8"))
            config_id = seed_config(db, data, activate=not args.inactive)
            logger.info("Seeded config %s from %s", config_id, args.config)
        if args.repair_options:
            logger.info("Fixed %d corrupted options entries", repair_options(db))


if __name__ == "__main__":
    main()
