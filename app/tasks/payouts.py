# app/tasks/payouts.py
from __future__ import annotations
import logging

from app.core.exceptions import EscrowError
from app.services.escrow_service import EscrowService

logger = logging.getLogger(__name__)

BATCH_LIMIT = 100  # orders per sweep, keeps each round short


# ------------------------------
# payout sweep
# ------------------------------
async def sweep_pending_payouts(escrow: EscrowService, limit: int = BATCH_LIMIT) -> int:
    """
    Settle COMPLETED orders whose payout never ran, e.g. a dispute resolved
    straight to COMPLETED or a payout that failed right after confirmation.
    One order per transaction; a failing order is logged and skipped.
    """
    order_ids = await escrow.list_unsettled_order_ids(limit)
    settled = 0
    for oid in order_ids:
        try:
            order = await escrow.process_order_payouts(oid)
        except EscrowError as e:
            logger.warning("Payout sweep skipped order %s: %s", oid, e.message)
            continue
        except Exception as e:
            logger.exception("Payout sweep failed for order %s: %s", oid, e)
            continue
        if order.payout_processed:
            settled += 1
    if settled:
        logger.info("Payout sweep settled %s order(s)", settled)
    return settled


# ------------------------------
# ledger integrity
# ------------------------------
async def check_wallet_integrity(escrow: EscrowService) -> list[str]:
    bad = await escrow.find_integrity_violations()
    for w in bad:
        logger.error(
            "Wallet %s (user %s) has a negative field: balance=%s pending=%s deposit=%s",
            w.id, w.user_id, w.balance, w.pending_balance, w.deposit,
        )
    return [w.id for w in bad]


# ------------------------------
# scheduler entry points
# ------------------------------
async def payout_sweep_job(escrow: EscrowService):
    try:
        await sweep_pending_payouts(escrow)
    except Exception as e:
        logger.exception("payout_sweep_job failed: %s", e)


async def integrity_check_job(escrow: EscrowService):
    try:
        await check_wallet_integrity(escrow)
    except Exception as e:
        logger.exception("integrity_check_job failed: %s", e)
