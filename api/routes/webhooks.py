"""Payment gateway webhook routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clients import GATEWAYS, GatewayAdapter
from core.constants import GatewayName
from core.exceptions import DatabaseError
from database.connection import get_db_session
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADERS: dict[str, str] = {
    GatewayName.MIDTRANS.value: "X-Signature-Key",
    GatewayName.XENDIT.value: "X-CALLBACK-TOKEN",
    GatewayName.TRIPAY.value: "X-Callback-Signature",
}


def get_gateway_registry() -> dict[str, GatewayAdapter]:
    """Clients able to verify inbound notifications, keyed by gateway name."""
    return {name: client_class() for name, client_class in GATEWAYS.items()}


async def _handle(
    gateway_name: str,
    request: Request,
    registry: dict[str, GatewayAdapter],
    db_session: AsyncSession,
) -> dict[str, str]:
    """
    Verify, parse and apply one notification.

    Signature and payload errors propagate as 401/400 before anything is
    written. Storage failures become 503 so the gateway retries later.
    """
    gateway = registry.get(gateway_name)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown gateway: {gateway_name}",
        )

    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[gateway_name])
    logger.info(f"Received {gateway_name} webhook ({len(raw_body)} bytes)")

    event = gateway.verify_and_parse(raw_body, signature)

    try:
        outcome = await WebhookProcessor(db_session).process(event)
    except SQLAlchemyError as e:
        logger.error(f"Storage failure while processing {gateway_name} webhook: {e}", exc_info=True)
        raise DatabaseError("temporary storage failure, retry later") from e

    return {"status": "ok", "outcome": outcome.value}


@router.post("/midtrans")
async def midtrans_webhook(
    request: Request,
    registry: dict[str, GatewayAdapter] = Depends(get_gateway_registry),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> dict[str, str]:
    """Midtrans HTTP notification; signed through ``signature_key``."""
    return await _handle(GatewayName.MIDTRANS.value, request, registry, db_session)


@router.post("/xendit")
async def xendit_webhook(
    request: Request,
    registry: dict[str, GatewayAdapter] = Depends(get_gateway_registry),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> dict[str, str]:
    """Xendit invoice callback; signed through ``X-CALLBACK-TOKEN``."""
    return await _handle(GatewayName.XENDIT.value, request, registry, db_session)


@router.post("/tripay")
async def tripay_webhook(
    request: Request,
    registry: dict[str, GatewayAdapter] = Depends(get_gateway_registry),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> dict[str, str]:
    """Tripay callback; signed through ``X-Callback-Signature``."""
    return await _handle(GatewayName.TRIPAY.value, request, registry, db_session)
