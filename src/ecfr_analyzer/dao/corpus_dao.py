from sqlalchemy.orm import Session
from ecfr_analyzer.models.document import Title, Document
from ecfr_analyzer.models.version_history import VersionHistory


def get_active_titles(db: Session) -> list[Title]:
    """Non-reserved titles in ascending number order: the work set of the title-based jobs."""
    return (
        db.query(Title)
        .filter(Title.reserved.is_(False))
        .order_by(Title.number.asc())
        .all()
    )


def get_title_document(db: Session, title_number: int) -> Document | None:
    return db.query(Document).filter_by(title_number=title_number, type="title").first()


def get_section_keys(db: Session) -> list[tuple[int, int, str, str | None]]:
    """
    (title_number, document_id, identifier, heading) for every section document,
    ordered by title number then identifier. The sort happens here, not in SQL,
    so the order does not depend on the backend's collation.
    """
    rows = (
        db.query(Document.title_number, Document.id, Document.identifier, Document.heading)
        .filter(Document.type == "section")
        .all()
    )
    return sorted(((r[0], r[1], r[2], r[3]) for r in rows), key=lambda r: (r[0], r[2]))


def get_document(db: Session, document_id: int) -> Document | None:
    return db.query(Document).filter_by(id=document_id).first()


def get_version_history(db: Session, title_number: int) -> VersionHistory | None:
    return db.query(VersionHistory).filter_by(title_number=title_number).first()
