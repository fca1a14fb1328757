"""Prioritised notification delivery queue.

This package turns notification requests into job envelopes and delivers
them through a pool of asyncio workers:

- Priority policy per notification kind, with urgent task escalation
- Quiet hours deferral evaluated in the recipient's timezone
- Exponential backoff retries and an explicit retry queue
- Batch splitting with staggered chunk dispatch
- SQLite persistence with compare-and-swap state transitions
- Prometheus metrics, FastAPI REST API and a click CLI

Example:
    Basic usage with the FastAPI application::

        from notify_queue.core import NotificationQueue
        from notify_queue.api import create_service_app

        queue = NotificationQueue(db_path="/data/notify_queue.db")
        app = create_service_app(queue, api_token="secret")
"""
