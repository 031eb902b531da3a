"""Manifest handling: backups and dependency rewriting.

Key classes:
    BackupStore          - ``.backup`` sidecar snapshots with a consistency check
    GemfileRewriter      - Line-oriented ``gem`` declaration rewriting
    PackageJsonRewriter  - Parse-tree rewriting of ``package.json`` dependencies
"""

from .backup import BACKUP_SUFFIX, BackupStore
from .gemfile import GemfileRewriter
from .package_json import PackageJsonChange, PackageJsonRewriter

GEMFILE = "Gemfile"
PACKAGE_JSON = "package.json"

__all__ = [
    "BACKUP_SUFFIX",
    "BackupStore",
    "GEMFILE",
    "GemfileRewriter",
    "PACKAGE_JSON",
    "PackageJsonChange",
    "PackageJsonRewriter",
]
