"""kforge release module.

Key classes:
    VersionResolver   - Build log -> git history -> operator token
    ArtifactPackager  - Versioned AnyKernel3 zip in the builds directory
"""

from .packager import ArtifactPackager, PackagingFailure, archive_name, utc_date_stamp
from .version import (
    VERSION_MARKER,
    VersionResolver,
    VersionSource,
    VersionToken,
    VersionUnresolvable,
    validate_token,
    version_from_build_log,
    version_from_history,
)

__all__ = [
    # Version
    "VersionResolver",
    "VersionToken",
    "VersionSource",
    "VersionUnresolvable",
    "VERSION_MARKER",
    "validate_token",
    "version_from_build_log",
    "version_from_history",
    # Packaging
    "ArtifactPackager",
    "PackagingFailure",
    "archive_name",
    "utc_date_stamp",
]
