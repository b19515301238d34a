"""
Inactivity tracking.

A visitor who produces no qualifying activity for INACTIVITY_TIMEOUT is
reported idle exactly once per idle episode. The last-activity timestamp lives
in a caller-supplied mapping (the Flask session for web visitors) so it
survives reloads.
"""

import logging
import threading
import time

logger = logging.getLogger(__name__)

ACTIVITY_STORAGE_KEY = 'lastActivityTime'
INACTIVITY_TIMEOUT = 10 * 60 * 1000  # 10 minutes, ms
CHECK_INTERVAL = 60 * 1000  # ms
ACTIVITY_EVENTS = ('mousedown', 'mousemove', 'keypress', 'scroll', 'touchstart', 'click')


def now_ms():
    return int(time.time() * 1000)


def read_last_activity(storage):
    value = storage.get(ACTIVITY_STORAGE_KEY)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning('Ignoring malformed %s value: %r', ACTIVITY_STORAGE_KEY, value)
        return None


def record_activity(storage, at=None):
    storage[ACTIVITY_STORAGE_KEY] = str(at if at is not None else now_ms())


def is_expired(storage, now=None, timeout=INACTIVITY_TIMEOUT):
    last_activity = read_last_activity(storage)
    if last_activity is None:
        return False
    now = now if now is not None else now_ms()
    return now - last_activity >= timeout


def check_request_idle(storage, now=None, timeout=INACTIVITY_TIMEOUT):
    """Treat an incoming request as activity.

    Returns True when the visitor had already been idle past `timeout`; the
    stale timestamp is dropped so the next episode starts clean.
    """
    now = now if now is not None else now_ms()
    if is_expired(storage, now, timeout):
        storage.pop(ACTIVITY_STORAGE_KEY, None)
        return True
    record_activity(storage, now)
    return False


class EventSource:
    """Minimal listener registry standing in for the page's DOM events."""

    def __init__(self):
        self._listeners = {}

    def add_listener(self, event, listener):
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event, listener):
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event=None):
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, event):
        for listener in list(self._listeners.get(event, [])):
            listener(event)


class _Repeating:
    def __init__(self, interval, callback):
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stopped.wait(self._interval):
            self._callback()

    def cancel(self):
        self._stopped.set()


class ThreadingScheduler:
    """Timers backed by threads; delays are in milliseconds."""

    def call_later(self, delay, callback):
        timer = threading.Timer(delay / 1000.0, callback)
        timer.daemon = True
        timer.start()
        return timer

    def call_every(self, interval, callback):
        return _Repeating(interval / 1000.0, callback)

    def cancel(self, handle):
        handle.cancel()


class ActivityTracker:
    def __init__(self, on_inactive, storage, events=None, timeout=INACTIVITY_TIMEOUT,
                 check_interval=CHECK_INTERVAL, clock=now_ms, scheduler=None):
        self.on_inactive = on_inactive
        self.storage = storage
        self.events = events if events is not None else EventSource()
        self.timeout = timeout
        self.check_interval = check_interval
        self.clock = clock
        self.scheduler = scheduler or ThreadingScheduler()

        self._lock = threading.RLock()
        self._notified = False
        self._timer = None
        self._interval = None
        self._listening = False
        self._active = False

    @property
    def notified(self):
        return self._notified

    def mount(self):
        with self._lock:
            if is_expired(self.storage, self.clock(), self.timeout):
                self._notified = True
                self.on_inactive()
                return

            self.update_activity_time()

            for event in ACTIVITY_EVENTS:
                self.events.add_listener(event, self.update_activity_time)
            self._listening = True
            self._active = True

            self._interval = self.scheduler.call_every(self.check_interval, self._periodic_check)

    def unmount(self):
        with self._lock:
            self._active = False
            if self._listening:
                for event in ACTIVITY_EVENTS:
                    self.events.remove_listener(event, self.update_activity_time)
                self._listening = False

            if self._timer is not None:
                self.scheduler.cancel(self._timer)
                self._timer = None

            if self._interval is not None:
                self.scheduler.cancel(self._interval)
                self._interval = None

    def update_activity_time(self, event=None):
        with self._lock:
            self._notified = False
            record_activity(self.storage, self.clock())
            self._reset_timeout()

    def check_inactivity(self):
        with self._lock:
            if self._notified:
                return False
            if is_expired(self.storage, self.clock(), self.timeout):
                self.on_inactive()
                self._notified = True
                return True
            return False

    def _reset_timeout(self):
        if self._timer is not None:
            self.scheduler.cancel(self._timer)
        self._timer = self.scheduler.call_later(self.timeout, self._on_timeout)

    def _periodic_check(self):
        if self._active:
            self.check_inactivity()

    def _on_timeout(self):
        with self._lock:
            self._timer = None
            if self._active:
                self.check_inactivity()
