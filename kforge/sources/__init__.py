"""kforge sources module.

Keeps the external source trees a build depends on in a known state.

Key classes:
    RepositorySynchronizer  - Clone-or-update working copies to branch tips
    FeatureModuleInstaller  - Remote setup scripts (KernelSU, Baseband-guard)
"""

from .feature import (
    FeatureInstallError,
    FeatureModuleInstaller,
    LsmUpdate,
    add_lsm_default,
    is_kernel_root,
)
from .repository import (
    GitCommandError,
    RepositorySynchronizer,
    SyncFailure,
    count_revisions,
    is_working_copy,
    run_git,
)

__all__ = [
    # Repositories
    "RepositorySynchronizer",
    "SyncFailure",
    "GitCommandError",
    "run_git",
    "is_working_copy",
    "count_revisions",
    # Feature modules
    "FeatureModuleInstaller",
    "FeatureInstallError",
    "LsmUpdate",
    "add_lsm_default",
    "is_kernel_root",
]
