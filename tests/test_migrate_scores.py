from ecfr_analyzer.dao.analysis_dao import migrate_legacy_scores
from ecfr_analyzer.models.section_analysis import SectionAnalysis
from ecfr_analyzer.scripts.migrate_scores import main, count_pending


def _row(document_id, antiquated, business, metadata):
    return SectionAnalysis(
        document_id=document_id, title_number=1, section_identifier=f"1.{document_id}", analysis_version="1.0",
        summary="s", antiquated_score=antiquated, antiquated_explanation="a",
        business_unfriendly_score=business, business_unfriendly_explanation="b", analysis_metadata=metadata,
    )


def _seed(db):
    db.add_all([
        _row(1, 7, 3, {"model": "grok-2"}),              # legacy 1-9 scale
        _row(2, 9, 45, None),                            # legacy, one score already large
        _row(3, 8, 4, {"model": "grok-3-mini", "scale": 100}),
    ])
    db.commit()


class TestScoreMigration:

    def test_promotes_legacy_rows_only(self, db_session):
        _seed(db_session)
        assert migrate_legacy_scores(db_session, batch_size=2) == 2

        rows = {r.document_id: r for r in db_session.query(SectionAnalysis).all()}
        assert (rows[1].antiquated_score, rows[1].business_unfriendly_score) == (70, 30)
        assert (rows[2].antiquated_score, rows[2].business_unfriendly_score) == (90, 45)
        assert (rows[3].antiquated_score, rows[3].business_unfriendly_score) == (8, 4)
        assert rows[1].analysis_metadata == {"model": "grok-2", "scale": 100}
        assert rows[2].analysis_metadata == {"scale": 100}

    def test_second_run_changes_nothing(self, db_session):
        _seed(db_session)
        migrate_legacy_scores(db_session)
        assert migrate_legacy_scores(db_session) == 0
        assert db_session.query(SectionAnalysis).filter_by(document_id=1).one().antiquated_score == 70

    def test_cli_dry_run_then_migrate(self, db_url, db_session):
        _seed(db_session)
        assert count_pending(db_session) == 2

        assert main(["--database-url", db_url, "--dry-run"]) == 0
        db_session.rollback()
        assert count_pending(db_session) == 2

        assert main(["--database-url", db_url, "--batch-size", "1"]) == 0
        db_session.rollback()
        assert count_pending(db_session) == 0
