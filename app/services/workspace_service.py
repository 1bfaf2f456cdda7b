from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.channel_instance import ChannelInstance
from app.models.workspace import Workspace
from app.schemas.workspace import WorkspaceCreate


def get_workspace(db: Session, workspace_id: str) -> Optional[Workspace]:
    return db.query(Workspace).filter(Workspace.id == workspace_id).first()


def get_workspaces_for_organization(db: Session, organization_id: str) -> List[Workspace]:
    """Sibling workspaces in creation order; keyword triggers are scanned in this order."""
    return (
        db.query(Workspace)
        .filter(Workspace.organization_id == organization_id)
        .order_by(Workspace.created_at.asc(), Workspace.id.asc())
        .all()
    )


def create_workspace(db: Session, workspace: WorkspaceCreate) -> Workspace:
    db_workspace = Workspace(
        name=workspace.name,
        organization_id=workspace.organization_id,
        nodes=[node.model_dump() for node in workspace.nodes],
        connections=[c.model_dump(by_alias=True) for c in workspace.connections],
        evolution_instance_id=workspace.evolution_instance_id,
        chatwoot_instance_id=workspace.chatwoot_instance_id,
        dialogy_instance_id=workspace.dialogy_instance_id,
    )
    db.add(db_workspace)
    db.commit()
    db.refresh(db_workspace)
    return db_workspace


def get_channel_instance(db: Session, instance_id: str) -> Optional[ChannelInstance]:
    if not instance_id:
        return None
    return db.query(ChannelInstance).filter(ChannelInstance.id == instance_id).first()
