from __future__ import annotations

from dataclasses import dataclass

from intake.domain.models import Source
from intake.domain.use_cases.ingest import tube_for
from intake.fanout.mirror import MIRROR_TUBE

MIRROR_ROLE = "worker-mirror"

SUPPORTED_ROLES = (
    "api",
    "worker-submissions",
    "worker-csv",
    MIRROR_ROLE,
)

# Worker role -> tubes it reserves from. The api role reserves nothing.
ROLE_TUBES: dict[str, tuple[str, ...]] = {
    "worker-submissions": (tube_for(Source.FORM), tube_for(Source.API)),
    "worker-csv": (tube_for(Source.CSV),),
    MIRROR_ROLE: (MIRROR_TUBE,),
}


@dataclass(frozen=True)
class RuntimeRole:
    name: str
    tubes: tuple[str, ...] = ()

    @property
    def is_worker(self) -> bool:
        return bool(self.tubes)

    @property
    def consumes_mirror(self) -> bool:
        return self.name == MIRROR_ROLE


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role, tubes=ROLE_TUBES.get(role, ()))

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: schema migrations are applied externally and are not an app role."
    )
