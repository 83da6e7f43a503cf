"""Version information for dora-sync.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "1.2.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 1.2.0 - User roster reconciliation, admin repository-config updates
# 1.1.0 - Datadog incident upsert, per-workflow deployment cursors
# 1.0.0 - Commit, pull request and deployment sync
