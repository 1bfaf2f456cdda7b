from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.capability import Capability


def get_capability(db: Session, capability_id: str) -> Optional[Capability]:
    return db.query(Capability).filter(Capability.id == capability_id).first()


def get_capability_by_slug(db: Session, slug: str, workspace_id: str = None) -> Optional[Capability]:
    query = db.query(Capability).filter(Capability.slug == slug)
    if workspace_id:
        query = query.filter(or_(Capability.workspace_id == workspace_id, Capability.workspace_id.is_(None)))
    return query.first()


def get_workspace_capabilities(db: Session, workspace_id: str) -> List[Capability]:
    """Active capabilities owned by the workspace plus shared ones."""
    return (
        db.query(Capability)
        .filter(Capability.is_active.is_(True))
        .filter(or_(Capability.workspace_id == workspace_id, Capability.workspace_id.is_(None)))
        .order_by(Capability.slug.asc())
        .all()
    )
