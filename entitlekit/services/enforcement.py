from __future__ import annotations

import logging

from fastapi import HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from entitlekit.domain.results import REASON_LIMIT_EXCEEDED, EntitlementResult
from entitlekit.services.resolver import EntitlementResolver


logger = logging.getLogger(__name__)


def _format_number(value: int | None) -> str:
    # Represent missing limits with the agreed header token.
    return "unlimited" if value is None else str(value)


def entitlement_headers(result: EntitlementResult) -> dict[str, str]:
    # Render entitlement headers for responses with consistent casing.
    headers = {
        "X-Entitlement-Feature": result.feature_code,
        "X-Entitlement-Allowed": "true" if result.allowed else "false",
    }
    if result.unlimited:
        headers["X-Entitlement-Limit"] = "unlimited"
        headers["X-Entitlement-Remaining"] = "unlimited"
        return headers
    if result.limit is not None:
        headers["X-Entitlement-Limit"] = _format_number(result.limit)
        headers["X-Entitlement-Used"] = str(result.used or 0)
        headers["X-Entitlement-Remaining"] = _format_number(result.remaining)
    return headers


def build_entitlement_exception(result: EntitlementResult) -> HTTPException:
    # Construct stable 403/429 payloads so clients can tell "not in plan" from "used up".
    if result.reason == REASON_LIMIT_EXCEEDED:
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "QUOTA_EXCEEDED",
                "message": "Feature quota exceeded for workspace",
                "feature_key": result.feature_code,
                "limit": result.limit,
                "used": result.used,
                "remaining": 0,
            },
            headers=entitlement_headers(result),
        )
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "FEATURE_NOT_ENABLED",
            "message": "Feature not enabled for workspace",
            "feature_key": result.feature_code,
            "reason": result.reason,
        },
    )


async def enforce_entitlement(
    *,
    session: AsyncSession,
    resolver: EntitlementResolver,
    workspace_id: str,
    feature_code: str,
    quantity: int = 1,
    response: Response | None = None,
    consume: bool = False,
) -> EntitlementResult:
    # Gate a request on an entitlement; with ``consume`` the usage is recorded in the same step.
    if consume:
        result = await resolver.consume(session, workspace_id, feature_code, quantity)
    else:
        result = await resolver.resolve(session, workspace_id, feature_code, quantity)

    if not result.allowed:
        logger.info(
            "entitlement_blocked workspace_id=%s feature_code=%s reason=%s",
            workspace_id,
            feature_code,
            result.reason,
        )
        raise build_entitlement_exception(result)

    if response is not None:
        for key, value in entitlement_headers(result).items():
            response.headers[key] = value
    return result
