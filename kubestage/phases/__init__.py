"""Provisioning phases and the lists they run in.

- PIPELINE: phases run by ``kubestage up``, in dependency order
- TEARDOWN: phases run by ``kubestage teardown``, reverse order of construction
- MAINTENANCE: phases only run on demand (``kubestage start``)
"""

from kubestage.errors import ConfigError
from kubestage.phases.argocd import GitopsInitPhase
from kubestage.phases.base import (
    Phase,
    PhaseContext,
    PhaseOutcome,
    PhaseRunner,
    PhaseStatus,
)
from kubestage.phases.bootstrap import InitPhase
from kubestage.phases.cluster import ClusterInitPhase
from kubestage.phases.database import DynamoDBPhase
from kubestage.phases.gitops import GitopsRepoPhase
from kubestage.phases.infrastructure import ApplyPhase
from kubestage.phases.instances import StartPhase
from kubestage.phases.teardown import (
    DestroyBackendPhase,
    DestroyDynamoDBPhase,
    DestroyGitopsPhase,
    DestroyInfrastructurePhase,
    DestroyWorkloadsPhase,
)
from kubestage.phases.workloads import DeployPhase

PIPELINE = [
    InitPhase(),
    ApplyPhase(),
    ClusterInitPhase(),
    DynamoDBPhase(),
    DeployPhase(),
    GitopsRepoPhase(),
    GitopsInitPhase(),
]

MAINTENANCE = [StartPhase()]

TEARDOWN = [
    DestroyGitopsPhase(),
    DestroyWorkloadsPhase(),
    DestroyDynamoDBPhase(),
    DestroyInfrastructurePhase(),
]

# Only with ``teardown --purge-backend``
BACKEND_TEARDOWN = DestroyBackendPhase()

ALL = {phase.name: phase for phase in PIPELINE + MAINTENANCE + TEARDOWN + [BACKEND_TEARDOWN]}


def get_phase(name: str) -> Phase:
    try:
        return ALL[name]
    except KeyError:
        raise ConfigError(f"Unknown phase: {name}. Available: {', '.join(ALL)}")


__all__ = [
    "ALL",
    "BACKEND_TEARDOWN",
    "MAINTENANCE",
    "PIPELINE",
    "TEARDOWN",
    "Phase",
    "PhaseContext",
    "PhaseOutcome",
    "PhaseRunner",
    "PhaseStatus",
    "get_phase",
]
