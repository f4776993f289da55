"""codeindex build side — lock, delta resolution, builds, verification, refresh."""

from codeindex.build.coordinator import BuildCoordinator, BuildReport, BuildState
from codeindex.build.delta import Delta, DeltaResolver
from codeindex.build.lock import BuildLock
from codeindex.build.scheduler import RefreshScheduler
from codeindex.build.verify import Problem, ProblemKind, Verifier, VerifyReport

__all__ = [
    "BuildCoordinator",
    "BuildLock",
    "BuildReport",
    "BuildState",
    "Delta",
    "DeltaResolver",
    "Problem",
    "ProblemKind",
    "RefreshScheduler",
    "Verifier",
    "VerifyReport",
]
