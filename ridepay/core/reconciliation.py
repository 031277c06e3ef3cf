"""
Payout reconciliation against RazorpayX.

Webhooks can be lost or arrive long after the fact. The reconciler fetches
a payout's authoritative status from the gateway and applies the same ledger
transition the webhook would have applied, so a payout never stays in
``processing`` just because a delivery went missing.
"""
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import Settings, get_settings
from ridepay.core import ledger
from ridepay.core.errors import ConflictError, NotFoundError
from ridepay.database.models import OPEN_PAYOUT_STATUSES, Payout
from ridepay.integrations.razorpayx_client import RazorpayXClient
from ridepay.integrations.webhook_events import PayoutEntity
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def apply_gateway_status(
    db: AsyncSession,
    payout: Payout,
    gateway_payout: Dict[str, Any],
    retry_delay_seconds: int,
) -> bool:
    """
    Apply the status RazorpayX reports for a payout.

    Args:
        db: Database session
        payout: Local payout row
        gateway_payout: Payout object returned by RazorpayX
        retry_delay_seconds: Delay before a failed payout becomes retryable

    Returns:
        bool: True if the local payout changed
    """
    remote = PayoutEntity.model_validate(gateway_payout)
    if remote.status == payout.status:
        return False

    if remote.status == "processed":
        return await ledger.settle_payout(db, payout, utr=remote.utr)
    if remote.status in ("failed", "rejected"):
        return await ledger.fail_payout(
            db,
            payout,
            failure_reason=remote.reason or remote.status,
            error_code=remote.error_code,
            retry_delay_seconds=retry_delay_seconds,
        )
    if remote.status == "reversed":
        return await ledger.reverse_payout(db, payout, failure_reason=remote.reason)
    if remote.status == "cancelled":
        applied = await ledger.transition_payout(
            db, payout, "cancelled", failure_reason=remote.reason, failed_at=ledger.utcnow()
        )
        if applied:
            await ledger.transition_transaction_payout(db, payout.transaction_id, "failed")
            await ledger.record_event(
                db,
                aggregate_type="payout",
                aggregate_id=payout.id,
                event_type="payout.cancelled",
                event_data={"failure_reason": remote.reason},
                correlation_id=payout.transaction_id,
            )
        return applied
    if remote.status == "processing":
        return await ledger.mark_payout_processing(db, payout)
    if remote.status in ("queued", "pending"):
        return await ledger.transition_payout(db, payout, remote.status)

    logger.warning(
        "payout_gateway_status_unknown",
        payout_id=str(payout.id),
        gateway_status=remote.status,
    )
    return False


class PayoutReconciler:
    """Brings local payout rows in line with RazorpayX."""

    def __init__(
        self,
        razorpayx_client: RazorpayXClient,
        settings: Optional[Settings] = None,
    ):
        self.razorpayx_client = razorpayx_client
        self.settings = settings or get_settings()

    async def reconcile_payout(self, payout_id: uuid.UUID, db: AsyncSession) -> Dict[str, Any]:
        """
        Fetch one payout from the gateway and apply its status.

        Args:
            payout_id: Local payout id
            db: Database session

        Returns:
            Dict[str, Any]: ``payout_id``, ``previous_status``, ``status``, ``changed``

        Raises:
            NotFoundError: If the payout does not exist
            ConflictError: If the payout was never accepted by the gateway
            GatewayError: If the gateway cannot be reached
        """
        payout = await db.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout not found")
        if not payout.gateway_payout_id:
            raise ConflictError("Payout has no gateway payout id")

        previous_status = payout.status
        try:
            remote = await self.razorpayx_client.fetch_payout(payout.gateway_payout_id)
        except Exception:
            metrics.record_payout_reconciliation("failed")
            raise

        changed = await apply_gateway_status(
            db, payout, remote, self.settings.payout_retry_delay_seconds
        )
        await db.commit()

        metrics.record_payout_reconciliation("updated" if changed else "unchanged")
        logger.info(
            "payout_reconciled",
            payout_id=str(payout.id),
            previous_status=previous_status,
            status=payout.status,
            changed=changed,
        )
        return {
            "payout_id": payout.id,
            "previous_status": previous_status,
            "status": payout.status,
            "changed": changed,
        }

    async def reconcile_stale(
        self,
        db: AsyncSession,
        older_than_seconds: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Reconcile open payouts not updated for ``older_than_seconds``.

        Failures are logged per payout and do not stop the batch.
        """
        start = time.monotonic()
        older_than = older_than_seconds or self.settings.payout_reconcile_after_seconds
        cutoff = ledger.utcnow() - timedelta(seconds=older_than)

        result = await db.execute(
            select(Payout.id)
            .where(
                Payout.status.in_(OPEN_PAYOUT_STATUSES),
                Payout.gateway_payout_id.is_not(None),
                Payout.updated_at < cutoff,
            )
            .order_by(Payout.updated_at)
            .limit(limit or self.settings.payout_sweep_batch_size)
        )
        payout_ids = list(result.scalars().all())

        results: List[Dict[str, Any]] = []
        for payout_id in payout_ids:
            try:
                results.append(await self.reconcile_payout(payout_id, db))
            except Exception as e:
                await db.rollback()
                logger.error(
                    "payout_reconciliation_failed",
                    payout_id=str(payout_id),
                    error=str(e),
                )
                results.append({"payout_id": payout_id, "error": str(e)})

        logger.info(
            "stale_payouts_reconciled",
            count=len(payout_ids),
            duration_seconds=round(time.monotonic() - start, 3),
        )
        return results
