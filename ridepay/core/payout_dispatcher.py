"""
Payout dispatcher: transfers the driver's net share through RazorpayX.

Orchestrates the payout flow:
1. Acquire the per-transaction distributed lock
2. Check the transaction is captured and has no open payout
3. Ensure the driver's payout account is provisioned and verified
4. Create the gateway payout with an attempt-scoped idempotency key
5. Persist the payout and commit
6. Release lock
"""
import asyncio
import functools
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from redlock import Redlock
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import Settings, get_settings
from ridepay.core import ledger
from ridepay.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    PayoutError,
)
from ridepay.core.queries import driver_payout_account
from ridepay.core.reconciliation import apply_gateway_status
from ridepay.database.models import (
    OPEN_PAYOUT_STATUSES,
    DriverPayoutAccount,
    LedgerEvent,
    Payout,
    Transaction,
    User,
)
from ridepay.integrations.gateway import GatewayError
from ridepay.integrations.razorpayx_client import RazorpayXClient
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYOUT_MODES = ("NEFT", "RTGS", "IMPS", "UPI")


def payout_idempotency_key(transaction_id: uuid.UUID, attempt: int) -> str:
    """Gateway idempotency key for the ``attempt``-th payout of a transaction."""
    return f"payout_{transaction_id}_{attempt}"


class PayoutDispatcher:
    """
    Creates, retries and batches driver payouts.

    Payout creation for a transaction is serialised with a Redlock lock and
    backed by the open-payout unique index; the gateway idempotency key
    makes a retried create call land on the same remote payout.
    """

    def __init__(
        self,
        razorpayx_client: RazorpayXClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payout dispatcher.

        Args:
            razorpayx_client: RazorpayX client
            settings: Optional settings (defaults to the cached settings)
        """
        self.razorpayx_client = razorpayx_client
        self.settings = settings or get_settings()
        self.redlock: Optional[Redlock] = None

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.settings.redis_url])
        return self.redlock

    async def _acquire_lock(self, redlock: Redlock, lock_key: str) -> Any:
        # redlock-py blocks (socket I/O, sleeps between attempts)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            functools.partial(redlock.lock, lock_key, self.settings.redis_lock_timeout * 1000),
        )

    @staticmethod
    async def _release_lock(redlock: Redlock, lock: Any) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(redlock.unlock, lock))

    async def setup_driver(
        self,
        driver_id: uuid.UUID,
        db: AsyncSession,
        bank_details: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Provision a driver for payouts.

        Idempotent: each step (account row, gateway contact, fund account,
        verification) runs only if it has not completed before, and progress
        is committed after every gateway call so a partial failure resumes
        where it stopped.

        Args:
            driver_id: Driver to provision
            db: Database session
            bank_details: ``account_holder_name``, ``account_number`` and
                ``ifsc_code``; required only when the driver has no account yet

        Returns:
            Dict[str, Any]: ``verified``, ``contact_id`` and ``fund_destination_id``

        Raises:
            PaymentValidationError: If no account exists and no bank details were given
            NotFoundError: If the driver is not in the user directory
            PayoutError: If the account is deactivated
            GatewayError: If a gateway call fails
        """
        log = logger.bind(driver_id=str(driver_id))
        account = await driver_payout_account(db, driver_id)

        if account is None:
            if not bank_details:
                raise PaymentValidationError("Bank details are required to set up payouts")
            account = DriverPayoutAccount(
                driver_id=driver_id,
                account_holder_name=bank_details["account_holder_name"],
                account_number=bank_details["account_number"],
                ifsc_code=bank_details["ifsc_code"].upper(),
            )
            db.add(account)
            await db.flush()
            await ledger.record_event(
                db,
                aggregate_type="driver_account",
                aggregate_id=account.id,
                event_type="driver_account.created",
                event_data={"account_number": account.masked_account_number},
            )
            await db.commit()
            log.info("driver_payout_account_created")

        if not account.is_active:
            raise PayoutError("Driver payout account is inactive")

        if not account.gateway_contact_id:
            driver = await db.get(User, driver_id)
            if driver is None:
                raise NotFoundError("Driver not found")
            contact = await self.razorpayx_client.create_contact(
                name=driver.name,
                reference_id=str(driver_id),
                email=driver.email,
                phone=driver.phone,
            )
            account.gateway_contact_id = contact["id"]
            await db.commit()

        if not account.gateway_fund_account_id:
            fund_account = await self.razorpayx_client.create_fund_account(
                contact_id=account.gateway_contact_id,
                account_holder_name=account.account_holder_name,
                account_number=account.account_number,
                ifsc_code=account.ifsc_code,
            )
            account.gateway_fund_account_id = fund_account["id"]
            await db.commit()

        if not account.is_verified:
            account.is_verified = True
            account.verified_at = ledger.utcnow()
            account.verification_method = "fund_account"
            await ledger.record_event(
                db,
                aggregate_type="driver_account",
                aggregate_id=account.id,
                event_type="driver_account.verified",
                event_data={
                    "contact_id": account.gateway_contact_id,
                    "fund_account_id": account.gateway_fund_account_id,
                },
            )
            await db.commit()
            log.info("driver_payout_account_verified")

        return {
            "verified": account.is_verified,
            "contact_id": account.gateway_contact_id,
            "fund_destination_id": account.gateway_fund_account_id,
        }

    async def _open_payout(self, transaction_id: uuid.UUID, db: AsyncSession) -> Optional[Payout]:
        result = await db.execute(
            select(Payout).where(
                Payout.transaction_id == transaction_id,
                Payout.status.in_(OPEN_PAYOUT_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _attempt_number(transaction_id: uuid.UUID, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count()).select_from(Payout).where(Payout.transaction_id == transaction_id)
        )
        return int(result.scalar_one())

    def _normalise_mode(self, mode: Optional[str]) -> str:
        normalised = (mode or self.settings.payout_default_mode).upper()
        if normalised not in PAYOUT_MODES:
            raise PaymentValidationError(f"Payout mode must be one of {', '.join(PAYOUT_MODES)}")
        return normalised

    async def create_payout(
        self,
        transaction_id: uuid.UUID,
        db: AsyncSession,
        mode: Optional[str] = None,
    ) -> Payout:
        """
        Create the payout for a captured transaction.

        Returns the existing payout unchanged if one is still open. On a
        gateway failure the transaction's payout status becomes ``failed``,
        no payout row is written, and the error is raised.

        Args:
            transaction_id: Captured transaction to pay out
            db: Database session
            mode: NEFT, RTGS, IMPS or UPI (defaults to the configured mode)

        Returns:
            Payout: The created (or already open) payout

        Raises:
            ConflictError: If another payout for the transaction is in flight
                or the payout already completed
            NotFoundError: If the transaction does not exist
            PayoutError: If the payment is not captured or the account is unverified
            GatewayError: If RazorpayX rejects or cannot take the payout
        """
        payout_mode = self._normalise_mode(mode)
        log = logger.bind(transaction_id=str(transaction_id), mode=payout_mode)

        lock_key = f"payout:lock:{transaction_id}"
        redlock = self._get_redlock()
        lock = await self._acquire_lock(redlock, lock_key)

        if not lock:
            log.warning("payout_lock_acquisition_failed", lock_key=lock_key)
            metrics.record_distributed_lock("failed")
            raise ConflictError("A payout for this transaction is already in progress")

        metrics.record_distributed_lock("acquired")
        try:
            transaction = await db.get(Transaction, transaction_id, populate_existing=True)
            if transaction is None:
                raise NotFoundError("Transaction not found")
            if transaction.payment_status != "captured":
                raise PayoutError("Payment is not captured")
            if transaction.payout_status == "completed":
                raise ConflictError("Payout already completed for this transaction")

            existing = await self._open_payout(transaction_id, db)
            if existing is not None:
                log.info("payout_already_open", payout_id=str(existing.id))
                metrics.record_payout(payout_mode, "existing")
                return existing

            await self.setup_driver(transaction.driver_id, db)
            account = await driver_payout_account(db, transaction.driver_id)
            if account is None or not account.is_verified:
                raise PayoutError("Driver payout account is not verified")

            attempt = await self._attempt_number(transaction_id, db)
            idempotency_key = payout_idempotency_key(transaction_id, attempt)

            try:
                remote = await self.razorpayx_client.create_payout(
                    fund_account_id=account.gateway_fund_account_id,
                    amount_paise=transaction.driver_net_amount,
                    currency=transaction.currency,
                    mode=payout_mode,
                    idempotency_key=idempotency_key,
                    reference_id=f"txn_{transaction_id.hex[:30]}",
                    narration=f"Ride payout {str(transaction.booking_id)[:8]}",
                    notes={
                        "transaction_id": str(transaction_id),
                        "booking_id": str(transaction.booking_id),
                        "driver_id": str(transaction.driver_id),
                    },
                )
            except GatewayError as e:
                await ledger.transition_transaction_payout(db, transaction_id, "failed")
                await ledger.record_event(
                    db,
                    aggregate_type="transaction",
                    aggregate_id=transaction_id,
                    event_type="payout.create_failed",
                    event_data={
                        "error": e.message,
                        "error_type": e.error_type.value,
                        "gateway_code": e.gateway_code,
                        "attempt": attempt,
                    },
                )
                await db.commit()
                log.error("payout_creation_failed", error=e.message, attempt=attempt)
                metrics.record_payout(payout_mode, "failed")
                raise

            now = ledger.utcnow()
            payout = Payout(
                id=uuid.uuid4(),
                transaction_id=transaction_id,
                driver_id=transaction.driver_id,
                booking_id=transaction.booking_id,
                amount=transaction.driver_net_amount,
                currency=transaction.currency,
                gateway_payout_id=remote["id"],
                gateway_fund_account_id=account.gateway_fund_account_id,
                gateway_contact_id=account.gateway_contact_id,
                idempotency_key=idempotency_key,
                status="queued",
                mode=payout_mode,
                retry_count=attempt,
                max_retries=self.settings.payout_max_retries,
                queued_at=now,
                initiated_at=now,
            )
            db.add(payout)
            await db.flush()

            await ledger.transition_transaction_payout(
                db, transaction_id, "processing", payout_initiated_at=now
            )
            await ledger.record_event(
                db,
                aggregate_type="payout",
                aggregate_id=payout.id,
                event_type="payout.created",
                event_data={
                    "gateway_payout_id": remote["id"],
                    "amount": payout.amount,
                    "mode": payout_mode,
                    "idempotency_key": idempotency_key,
                },
                correlation_id=transaction_id,
            )
            await apply_gateway_status(
                db, payout, remote, self.settings.payout_retry_delay_seconds
            )
            await db.commit()

            log.info(
                "payout_created",
                payout_id=str(payout.id),
                gateway_payout_id=remote["id"],
                amount_paise=payout.amount,
                status=payout.status,
            )
            metrics.record_payout(payout_mode, "created", payout.amount)
            return payout

        finally:
            await self._release_lock(redlock, lock)

    async def retry_payout(
        self,
        payout_id: uuid.UUID,
        db: AsyncSession,
        trigger: str = "operator",
    ) -> Payout:
        """
        Retry a failed payout.

        Creates a new payout for the same transaction and counts the retry on
        the original record. A retry that fails at the gateway still counts,
        and is rescheduled while retries remain.

        Raises:
            NotFoundError: If the payout does not exist
            PayoutError: If the payout is not failed or has no retries left
        """
        payout = await db.get(Payout, payout_id, populate_existing=True)
        if payout is None:
            raise NotFoundError("Payout not found")
        if payout.status != "failed":
            raise PayoutError("Can only retry failed payouts")
        if payout.retry_count >= payout.max_retries:
            raise PayoutError("Maximum retry attempts reached")

        metrics.record_payout_retry(trigger)
        logger.info(
            "payout_retry_started",
            payout_id=str(payout_id),
            retry_count=payout.retry_count,
            trigger=trigger,
        )

        retry_count = payout.retry_count + 1
        try:
            new_payout = await self.create_payout(payout.transaction_id, db, mode=payout.mode)
        except GatewayError:
            await self._count_retry(db, payout, retry_count, reschedule=True)
            raise

        await self._count_retry(db, payout, retry_count, reschedule=False)
        return new_payout

    async def _count_retry(
        self, db: AsyncSession, payout: Payout, retry_count: int, reschedule: bool
    ) -> None:
        next_retry_at: Optional[datetime] = None
        if reschedule and retry_count < payout.max_retries:
            next_retry_at = ledger.utcnow() + timedelta(
                seconds=self.settings.payout_retry_delay_seconds
            )
        await db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.retry_count == retry_count - 1)
            .values(retry_count=retry_count, next_retry_at=next_retry_at)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(payout)

    async def batch_trigger(
        self,
        transaction_ids: List[uuid.UUID],
        db: AsyncSession,
        mode: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Best-effort payout creation for many transactions.

        Returns:
            List[Dict[str, Any]]: One ``{transaction_id, success, payout_id | error}``
            entry per input id, in input order
        """
        results: List[Dict[str, Any]] = []
        for transaction_id in transaction_ids:
            try:
                payout = await self.create_payout(transaction_id, db, mode=mode)
                results.append(
                    {"transaction_id": transaction_id, "success": True, "payout_id": payout.id}
                )
            except (PaymentError, GatewayError) as e:
                await db.rollback()
                results.append(
                    {"transaction_id": transaction_id, "success": False, "error": str(e)}
                )
            except Exception as e:
                await db.rollback()
                logger.error(
                    "batch_payout_failed",
                    transaction_id=str(transaction_id),
                    error=str(e),
                    exc_info=True,
                )
                results.append(
                    {"transaction_id": transaction_id, "success": False, "error": str(e)}
                )

        logger.info(
            "batch_payout_completed",
            requested=len(transaction_ids),
            succeeded=sum(1 for r in results if r["success"]),
        )
        return results

    async def process_pending_payouts(
        self, db: AsyncSession, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Create payouts for captured transactions that still need one.

        Picks up transactions whose payout is ``pending`` first, then those
        whose payout create call failed before a payout row was written (see
        ``_failed_creations_due``).
        """
        batch_size = limit or self.settings.payout_sweep_batch_size
        result = await db.execute(
            select(Transaction.id)
            .where(Transaction.payment_status == "captured", Transaction.payout_status == "pending")
            .order_by(Transaction.captured_at)
            .limit(batch_size)
        )
        transaction_ids = list(result.scalars().all())
        if len(transaction_ids) < batch_size:
            remaining = batch_size - len(transaction_ids)
            transaction_ids += await self._failed_creations_due(db, remaining)
        if not transaction_ids:
            return []
        return await self.batch_trigger(transaction_ids, db)

    async def _failed_creations_due(self, db: AsyncSession, limit: int) -> List[uuid.UUID]:
        """
        Transactions whose payout create call failed with no payout row written.

        Attempts are counted from the ``payout.create_failed`` ledger events;
        a transaction is due once the retry delay has passed since its last
        failure and while it has made no more than ``payout_max_retries``
        retries.
        """
        failures = (
            select(
                LedgerEvent.aggregate_id.label("transaction_id"),
                func.count().label("attempts"),
                func.max(LedgerEvent.created_at).label("last_failed_at"),
            )
            .where(
                LedgerEvent.aggregate_type == "transaction",
                LedgerEvent.event_type == "payout.create_failed",
            )
            .group_by(LedgerEvent.aggregate_id)
            .subquery()
        )
        has_payout = select(Payout.id).where(Payout.transaction_id == Transaction.id).exists()
        due_before = ledger.utcnow() - timedelta(seconds=self.settings.payout_retry_delay_seconds)

        result = await db.execute(
            select(Transaction.id)
            .join(failures, failures.c.transaction_id == Transaction.id)
            .where(
                Transaction.payment_status == "captured",
                Transaction.payout_status == "failed",
                ~has_payout,
                failures.c.attempts <= self.settings.payout_max_retries,
                failures.c.last_failed_at <= due_before,
            )
            .order_by(failures.c.last_failed_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def retry_due_payouts(
        self, db: AsyncSession, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Retry failed payouts whose ``next_retry_at`` has passed."""
        result = await db.execute(
            select(Payout.id)
            .where(
                Payout.status == "failed",
                Payout.next_retry_at.is_not(None),
                Payout.next_retry_at <= ledger.utcnow(),
                Payout.retry_count < Payout.max_retries,
            )
            .order_by(Payout.next_retry_at)
            .limit(limit or self.settings.payout_sweep_batch_size)
        )
        payout_ids = list(result.scalars().all())

        results: List[Dict[str, Any]] = []
        for payout_id in payout_ids:
            try:
                new_payout = await self.retry_payout(payout_id, db, trigger="sweep")
                results.append({"payout_id": payout_id, "success": True, "new_payout_id": new_payout.id})
            except GatewayError as e:
                await db.rollback()
                results.append({"payout_id": payout_id, "success": False, "error": str(e)})
            except PaymentError as e:
                # Not retryable any more (e.g. a later payout already completed)
                await db.rollback()
                await db.execute(
                    update(Payout)
                    .where(Payout.id == payout_id)
                    .values(next_retry_at=None)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                logger.warning("payout_retry_abandoned", payout_id=str(payout_id), error=str(e))
                results.append({"payout_id": payout_id, "success": False, "error": str(e)})
        return results
