"""kforge patcher module.

Key classes:
    PatchApplier  - Dry-run guarded forward apply and forced apply
    PatchChain    - Overlay staging plus the ordered patch steps
"""

from .applier import PatchApplier, PatchConflict, PatchOutcome, PatchSpec
from .chain import ChainReport, PatchChain

__all__ = [
    "PatchApplier",
    "PatchConflict",
    "PatchOutcome",
    "PatchSpec",
    "PatchChain",
    "ChainReport",
]
