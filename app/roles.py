from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_ROLES = (
    "api",
    "worker-reaper",
    "worker-materializer",
)

# Sweep loops each role runs next to its HTTP surface.
ROLE_SWEEPS: dict[str, tuple[str, ...]] = {
    "api": ("reaper", "materializer"),
    "worker-reaper": ("reaper",),
    "worker-materializer": ("materializer",),
}


@dataclass(frozen=True)
class RuntimeRole:
    name: str
    sweeps: tuple[str, ...] = ()

    @property
    def owns_executor(self) -> bool:
        """Only the api role accepts submissions, so only it runs generations."""
        return self.name == "api"


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role, sweeps=ROLE_SWEEPS[role])

    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {', '.join(SUPPORTED_ROLES)}. "
        "Note: schema migrations are applied externally and generations run inside the api role."
    )
