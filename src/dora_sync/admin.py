"""Administrator operations.

Manual triggers and the edit path for admin-owned repository fields. Each
operation reports through an OperationResult; failures are returned, not
raised, and never retried.
"""

import logging
from typing import Any, Optional

from dora_sync.service import SyncService
from dora_sync.storage.store import Database
from dora_sync.sync.protocols import MembershipChecker
from dora_sync.sync.results import OperationResult, RepositorySyncResult

logger = logging.getLogger("dora_sync.admin")

_UNSET: Any = object()


async def trigger_deployment_sync(
    service: SyncService, repository_id: Optional[int] = None
) -> OperationResult:
    """Run deployment sync now, for all repositories or a single one."""
    scope = "all repositories" if repository_id is None else f"repository {repository_id}"
    logger.info("Manual deployment sync requested for %s", scope)
    try:
        result = await service.sync_deployments(repository_id=repository_id)
    except Exception as e:
        logger.error("Manual deployment sync for %s failed: %s", scope, e)
        return OperationResult(False, f"Deployment sync failed: {e}")

    details = result.to_dict()
    if not result.ok:
        return OperationResult(False, f"Deployment sync for {scope} failed", details)
    return OperationResult(True, f"Deployment sync for {scope} completed", details)


async def trigger_repository_sync(service: SyncService) -> OperationResult:
    """Register every repository visible to the token that is not tracked yet.

    On success ``details`` is ``{"new": ..., "total": ..., "unchanged": ...}``.
    """
    logger.info("Manual repository sync requested")
    try:
        result = await service.sync_repositories()
    except Exception as e:
        logger.error("Manual repository sync failed: %s", e)
        return OperationResult(False, f"Repository sync failed: {e}")

    if not result.ok:
        errors = "; ".join(e.message for e in result.errors)
        return OperationResult(False, f"Repository sync failed: {errors}", result.to_dict())

    summary = RepositorySyncResult.from_outcome(result.sources[0].result.value)
    logger.info("Repository sync complete", extra=summary.to_dict())
    return OperationResult(
        True,
        f"{summary.new_repositories} new repositories registered",
        summary.to_dict(),
    )


def update_repository_config(
    database: Database,
    repository_id: int,
    datadog_service_name: Optional[str] = _UNSET,
    deployment_workflow_file_name: Optional[str] = _UNSET,
) -> OperationResult:
    """Set the Datadog service name and/or deployment workflow file.

    Arguments left unset are not touched; passing None or "" clears the field.
    """
    fields = {}
    if datadog_service_name is not _UNSET:
        fields["datadog_service_name"] = (datadog_service_name or "").strip() or None
    if deployment_workflow_file_name is not _UNSET:
        fields["deployment_workflow_file_name"] = (
            (deployment_workflow_file_name or "").strip() or None
        )
    if not fields:
        return OperationResult(False, "Nothing to update")

    try:
        with database.unit_of_work() as store:
            config = store.update_repository_config(repository_id, **fields)
            url = config.repository_url
    except KeyError:
        return OperationResult(False, f"Repository config {repository_id} not found")
    except ValueError as e:
        return OperationResult(False, str(e))

    logger.info("Updated repository config %s (%s)", repository_id, url, extra=fields)
    return OperationResult(
        True, f"Repository config {repository_id} updated", {"id": repository_id, **fields}
    )


async def verify_member(
    checker: MembershipChecker, username: str, org: str
) -> OperationResult:
    """Check whether ``username`` belongs to ``org``."""
    is_member = await checker.is_user_member_of_organization(username, org)
    message = f"{username} is {'a' if is_member else 'not a'} member of {org}"
    return OperationResult(True, message, {"member": is_member})
