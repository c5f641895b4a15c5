"""
M-Pesa Scheduler
Runs the reconciliation sweep on an interval using APScheduler
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

logger = logging.getLogger(__name__)


class MpesaScheduler:
    """
    Manages the periodic reconciliation job for pending M-Pesa transactions.
    """

    def __init__(self, reconciler, interval_minutes=5):
        self.reconciler = reconciler
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler()
        self.is_running = False

    def start(self):
        """Start the scheduler with the reconciliation job"""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        try:
            self.scheduler.add_job(
                func=self._run_sweep,
                trigger=IntervalTrigger(minutes=self.interval_minutes),
                id='reconcile_pending_mpesa',
                name='Reconcile Pending M-Pesa Transactions',
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )

            self.scheduler.start()
            self.is_running = True
            logger.info(f"M-Pesa scheduler started (every {self.interval_minutes} min)")

        except Exception as e:
            logger.error(f"Failed to start M-Pesa scheduler: {str(e)}")
            raise

    def stop(self):
        """Stop the scheduler"""
        if not self.is_running:
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("M-Pesa scheduler stopped")
        except Exception as e:
            logger.error(f"Error stopping scheduler: {str(e)}")

    def _run_sweep(self):
        try:
            self.reconciler.sweep()
        except Exception as e:
            logger.error(f"Scheduled reconciliation sweep failed: {str(e)}")

    def get_scheduler_status(self):
        """Get current scheduler status"""
        jobs = []
        if self.is_running:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    'id': job.id,
                    'name': job.name,
                    'next_run': job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            'is_running': self.is_running,
            'interval_minutes': self.interval_minutes,
            'jobs': jobs
        }
