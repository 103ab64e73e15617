import logging
from extensions import scheduler
from errors import StoreUnavailableError
from store import donation_store

logger = logging.getLogger(__name__)


def start_scheduler():
    """ Starts the background clock. Call only from the process entry point. """
    scheduler.start()
    logger.info("⏰ Scheduler Started: Watching for expired food...")


# ==========================================
#  TASK: AUTO-EXPIRE FOOD
# ==========================================
# Runs every hour (at minute 0)
@scheduler.task('cron', id='expire_food', minute=0)
def expire_food_job():
    """
    Persists the derived 'expired' status for available items past expiry.
    Claims already refuse expired food on their own; this keeps stored
    status and statistics honest.
    """
    # We must use scheduler.app.app_context() because this runs in the background
    with scheduler.app.app_context():
        try:
            count = donation_store().expire_stale()
        except StoreUnavailableError as e:
            logger.error(f"❌ Scheduler Error: {e}")
            return 0

        if count:
            logger.info(f"⚠️  Scheduler: Marked {count} items as EXPIRED.")
        return count
