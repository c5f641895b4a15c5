"""
Notification Dispatcher - fire-and-forget delivery of payment notifications

Request handlers enqueue a job and return immediately. A daemon worker thread
writes the in-app notification and sends the push. Failures are logged and
dropped; nothing is reported back to the enqueuing request.
"""
import logging
import queue
import threading
from typing import Any, Dict, Optional

from blueprints.notifications import create_user_notification

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 1000


class NotificationDispatcher:
    """Background worker draining notification jobs from an in-memory queue"""

    def __init__(self, db, push_service=None, max_queue_size=DEFAULT_MAX_QUEUE_SIZE):
        self.db = db
        self.push_service = push_service
        self.jobs = queue.Queue(maxsize=max_queue_size)
        self.worker_running = False
        self.worker_thread = None

    def start_worker(self):
        """Start the background worker thread"""
        if not self.worker_running:
            self.worker_running = True
            self.worker_thread = threading.Thread(target=self._worker_loop, daemon=True,
                                                  name='notification-dispatcher')
            self.worker_thread.start()
            logger.info("Notification dispatcher worker started")

    def stop_worker(self):
        """Stop the background worker thread"""
        self.worker_running = False
        if self.worker_thread:
            self.worker_thread.join(timeout=5)
            self.worker_thread = None
        logger.info("Notification dispatcher worker stopped")

    def enqueue(self, user_id, notification_type: str, title: str, body: str,
                data: Optional[Dict[str, Any]] = None) -> bool:
        """Hand a job to the worker; never blocks, returns False when the queue is full"""
        if not user_id:
            return False
        job = {
            'user_id': str(user_id),
            'notification_type': notification_type,
            'title': title,
            'body': body,
            'data': data or {},
        }
        try:
            self.jobs.put_nowait(job)
            return True
        except queue.Full:
            logger.warning(f"Notification queue full, dropping {notification_type} for user {user_id}")
            return False

    def process_job(self, job: Dict[str, Any]):
        """Deliver one job; errors are logged, never raised"""
        try:
            notification_id = create_user_notification(
                self.db,
                job['user_id'],
                job['notification_type'],
                job['title'],
                job['body'],
                data=job['data'],
            )
            if notification_id is None:
                logger.warning(f"In-app notification not stored for user {job['user_id']}")

            if self.push_service is not None:
                push_data = dict(job['data'])
                push_data['notification_type'] = job['notification_type']
                self.push_service.send_to_user(self.db, job['user_id'], job['title'], job['body'], push_data)
        except Exception as e:
            logger.error(f"Notification job failed for user {job.get('user_id')}: {e}")

    def drain(self) -> int:
        """Process every queued job on the calling thread; returns the number processed"""
        processed = 0
        while True:
            try:
                job = self.jobs.get_nowait()
            except queue.Empty:
                return processed
            try:
                self.process_job(job)
                processed += 1
            finally:
                self.jobs.task_done()

    def _worker_loop(self):
        while self.worker_running:
            try:
                job = self.jobs.get(timeout=1)
            except queue.Empty:
                continue
            try:
                self.process_job(job)
            finally:
                self.jobs.task_done()
