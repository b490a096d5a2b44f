from pydantic import BaseModel

from intranet.schemas.auth import Identity


class SessionSnapshotResponse(BaseModel):
    identity: Identity | None = None
    roles: list[str] = []
    primary_role: str | None = None
    connectivity: str
    loading_phase: str


class RouteDecisionResponse(BaseModel):
    path: str
    outcome: str
    redirect_to: str | None = None
    snapshot: SessionSnapshotResponse
