from dataclasses import dataclass


@dataclass(frozen=True)
class RequestScope:
    tenant_id: str
    project_id: str
    actor: str = "api"
