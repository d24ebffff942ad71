from fastapi import Header, Request

from pricerun.core.scope import RequestScope
from pricerun.db.session import SessionLocal
from pricerun.services.channel_connector import ChannelRegistry
from pricerun.workers.rules_worker import RuleRunWorker


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scope(
    x_tenant_id: str = Header(alias="X-Tenant-Id", min_length=1, max_length=36),
    x_project_id: str = Header(alias="X-Project-Id", min_length=1, max_length=36),
    x_actor: str = Header(default="api", alias="X-Actor", min_length=1, max_length=120),
) -> RequestScope:
    # Identity headers are set by the gateway in front of this service.
    return RequestScope(tenant_id=x_tenant_id.strip(), project_id=x_project_id.strip(), actor=x_actor.strip())


def get_channel_registry(request: Request) -> ChannelRegistry:
    return request.app.state.channels


def get_worker(request: Request) -> RuleRunWorker:
    return request.app.state.worker
