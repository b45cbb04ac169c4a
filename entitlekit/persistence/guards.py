from __future__ import annotations


class WorkspacePredicateError(ValueError):
    # Surface missing workspace scoping before any query is built.
    pass


def require_workspace_id(workspace_id: str | None) -> str:
    # Every grant and ledger query must be scoped to exactly one workspace.
    normalized = str(workspace_id or "").strip()
    if not normalized:
        raise WorkspacePredicateError("workspace_id is required")
    return normalized


def workspace_predicate(model, workspace_id: str) -> object:
    # Build workspace predicates through a single helper to guarantee guard coverage.
    return model.workspace_id == require_workspace_id(workspace_id)


def normalize_namespace_id(namespace_id: str | None) -> str | None:
    # None (or blank) means the workspace itself rather than one of its namespaces.
    normalized = str(namespace_id or "").strip()
    return normalized or None


def namespace_predicate(model, namespace_id: str | None) -> object:
    # Workspace-level rows carry no namespace; namespace rows never leak into workspace reads.
    normalized = normalize_namespace_id(namespace_id)
    if normalized is None:
        return model.namespace_id.is_(None)
    return model.namespace_id == normalized
