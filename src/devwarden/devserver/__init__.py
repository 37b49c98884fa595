"""Dev server supervision: resolve, launch, watch and stop dev servers."""

from devwarden.devserver.cleanup import CleanupReport, cleanup_stale_dev_server
from devwarden.devserver.health import HealthCheckResult, check_health
from devwarden.devserver.process import DevServerChild
from devwarden.devserver.resolve import PackageJsonResolver, PlanResolver
from devwarden.devserver.store import DevConfigStore, PersistedDevConfig
from devwarden.devserver.supervisor import (
    CrashEvent,
    DevServerProcess,
    DevServerStatus,
    DevServerSupervisor,
    StartResult,
)

__all__ = [
    "CleanupReport",
    "CrashEvent",
    "DevConfigStore",
    "DevServerChild",
    "DevServerProcess",
    "DevServerStatus",
    "DevServerSupervisor",
    "HealthCheckResult",
    "PackageJsonResolver",
    "PersistedDevConfig",
    "PlanResolver",
    "StartResult",
    "check_health",
    "cleanup_stale_dev_server",
]
