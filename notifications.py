"""
In-process realtime event fan-out.

Handlers and the recurring-task sweep publish events to rooms
(``project:<id>`` / ``user:<id>``); WebSocket connections subscribe a
callback per room. Publishing is synchronous and never raises: a failing
subscriber is logged and skipped.
"""
import asyncio
import logging
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)

TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"
TASK_DELETED = "task:deleted"
INVITE_RECEIVED = "invite:received"
INVITE_ACCEPTED = "invite:accepted"
PROJECT_UPDATED = "project:updated"
PROJECT_MEMBER_ADDED = "project:member-added"
PROJECT_MEMBER_REMOVED = "project:member-removed"
COMMENT_ADDED = "comment:added"


def project_room(project_id) -> str:
    return f"project:{project_id}"


def user_room(user_id) -> str:
    return f"user:{user_id}"


def task_room(task) -> str:
    """Project room for project tasks, the creator's room for personal ones."""
    if task.project_id is not None:
        return project_room(task.project_id)
    return user_room(task.creator_id)


class Notifier:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = defaultdict(list)

    def subscribe(self, room: str, callback) -> None:
        with self._lock:
            self._subscribers[room].append(callback)

    def unsubscribe(self, room: str, callback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(room)
            if not callbacks:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                del self._subscribers[room]

    def subscriber_count(self, room: str) -> int:
        with self._lock:
            return len(self._subscribers.get(room, ()))

    def emit(self, room: str, event: str, payload) -> int:
        """Deliver ``event`` to every subscriber of ``room``; returns deliveries."""
        with self._lock:
            callbacks = list(self._subscribers.get(room, ()))
        message = {"event": event, "room": room, "data": payload}
        delivered = 0
        for callback in callbacks:
            try:
                callback(message)
                delivered += 1
            except Exception:
                logger.exception("Subscriber failed room=%s event=%s", room, event)
        logger.debug("Emitted %s to %s (%s subscribers)", event, room, delivered)
        return delivered


def queue_forwarder(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    """Subscriber callback pushing messages into ``queue`` from any thread."""

    def forward(message):
        loop.call_soon_threadsafe(queue.put_nowait, message)

    return forward
