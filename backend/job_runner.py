"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; returns a dict with "message" and counts.
"""
import logging

logger = logging.getLogger(__name__)


async def run_subscription_reconciliation(dry_run: bool = False):
    try:
        from services.subscription_sync_service import subscription_sync_service
        summary = await subscription_sync_service.reconcile_all(dry_run=dry_run)
        logger.info(
            f"Subscription reconciliation job completed: {summary['processed']} processed, "
            f"{summary['errors']} errors, {summary['skipped']} skipped"
        )
        return {
            "message": f"Reconciled {summary['processed']} of {summary['total']} customers",
            "count": summary["processed"],
            "errors": summary["errors"],
        }
    except Exception as e:
        logger.error(f"Subscription reconciliation job failed: {e}")
        raise


async def run_expiration_check():
    try:
        from services.subscription_sync_service import subscription_sync_service
        summary = await subscription_sync_service.check_expirations()
        logger.info(
            f"Expiration check job completed: {summary['processed']} processed, "
            f"{summary['fixed']} fixed, {summary['errors']} errors"
        )
        return {
            "message": f"Checked {summary['processed']} expired subscriptions, fixed {summary['fixed']}",
            "count": summary["fixed"],
            "errors": summary["errors"],
        }
    except Exception as e:
        logger.error(f"Expiration check job failed: {e}")
        raise


async def run_webhook_recovery(limit: int = 50):
    try:
        from services.stripe_webhook_service import stripe_webhook_service
        summary = await stripe_webhook_service.recover_failed_events(limit=limit)
        return {
            "message": f"Recovered {summary['recovered']} of {summary['processed']} failed webhook events",
            "count": summary["recovered"],
            "errors": summary["failed"] + summary["unrecoverable"],
            "unrecoverable": summary["unrecoverable"],
        }
    except Exception as e:
        logger.error(f"Webhook recovery job failed: {e}")
        raise
