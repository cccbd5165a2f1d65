"""
One-shot promotion of legacy section scores (1-9 scale) to the 1-100 scale.

    ecfr-migrate-scores            # uses DATABASE_URL
    ecfr-migrate-scores --dry-run  # report only
"""
import argparse
import logging
from ecfr_analyzer.config import configure_logging, settings
from ecfr_analyzer.dao.analysis_dao import migrate_legacy_scores, SCORE_SCALE
from ecfr_analyzer.database import build_session_factory, Base
from ecfr_analyzer.models.section_analysis import SectionAnalysis

logger = logging.getLogger(__name__)


def count_pending(db) -> int:
    return sum(
        1 for (meta,) in db.query(SectionAnalysis.analysis_metadata).all()
        if (meta or {}).get("scale") != SCORE_SCALE
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Promote legacy 1-9 section scores to the 1-100 scale")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--batch-size", type=int, default=500)
    parser.add_argument("--dry-run", action="store_true", help="only count rows that would be stamped")
    args = parser.parse_args(argv)

    configure_logging()
    session_factory = build_session_factory(args.database_url)
    Base.metadata.create_all(bind=session_factory.kw["bind"], tables=[SectionAnalysis.__table__])
    with session_factory() as db:
        if args.dry_run:
            logger.info("%d section analyses predate the 1-100 scale", count_pending(db))
            return 0
        migrate_legacy_scores(db, batch_size=args.batch_size)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
