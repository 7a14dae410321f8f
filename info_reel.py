"""
Info Reel (presentation mode) for the Tenant Committee Portal.

When a page is opened with ?view=infoReel the portal turns into an
unattended display: every page in the reel is shown for a fixed dwell
time, a countdown bar shrinks from 100% to 0%, and then the display moves
on to the next page of the cycle, keeping the view parameter.
"""
import logging
import threading
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

VIEW_PARAM = "view"
VIEW_VALUE = "infoReel"

# Order of the tour. Add a path here to include a page in the reel.
REEL_ROUTES = ["/", "/events", "/budget", "/minutes", "/social"]

REEL_DURATION_MS = 30000  # 30 seconds per page
TICK_INTERVAL_MS = 50  # Smooth enough for the countdown bar


def monotonic_ms():
    return time.monotonic() * 1000


def is_info_reel(url_or_args) -> bool:
    """
    Check whether presentation mode is requested.

    Args:
        url_or_args: Full URL / path with query string, or a query mapping
            (e.g. request.args).

    Returns:
        bool: True only when the view parameter equals the sentinel.
    """
    if url_or_args is None:
        return False
    if isinstance(url_or_args, str):
        values = parse_qs(urlsplit(url_or_args).query).get(VIEW_PARAM, [])
        value = values[0] if values else None
    else:
        value = url_or_args.get(VIEW_PARAM)
    return value == VIEW_VALUE


def route_index(path, routes=None) -> int:
    """Position of path in the cycle, -1 when the page is not part of it."""
    routes = REEL_ROUTES if routes is None else routes
    try:
        return routes.index(path)
    except ValueError:
        return -1


def next_route_url(path, routes=None) -> str:
    """
    URL of the page that follows path in the cycle.

    Pages outside the cycle (index -1) continue from the first page.
    """
    routes = REEL_ROUTES if routes is None else routes
    next_index = (route_index(path, routes) + 1) % len(routes)
    return f"{routes[next_index]}?{VIEW_PARAM}={VIEW_VALUE}"


def compute_progress(entered_at_ms, now_ms, duration_ms=REEL_DURATION_MS) -> float:
    """
    Remaining share of the dwell window.

    Returns:
        float: 100.0 right after entering the page, 0.0 when the
        transition is due.
    """
    elapsed = max(0.0, now_ms - entered_at_ms)
    remaining = 100.0 - (elapsed / duration_ms) * 100.0
    return min(100.0, max(0.0, remaining))


@dataclass(frozen=True)
class ReelSnapshot:
    is_active: bool
    path: str
    route_index: int
    progress: float
    next_url: str | None
    duration_ms: int

    @property
    def duration_seconds(self) -> int:
        return max(1, round(self.duration_ms / 1000))

    @property
    def remaining_seconds(self) -> float:
        return self.duration_ms * self.progress / 100.0 / 1000.0


def reel_snapshot(url, routes=None, duration_ms=REEL_DURATION_MS,
                  entered_at_ms=None, now_ms=None) -> ReelSnapshot:
    """Snapshot of the reel state for a page at url."""
    routes = REEL_ROUTES if routes is None else routes
    path = urlsplit(url).path or "/"
    active = is_info_reel(url)
    if not active:
        return ReelSnapshot(False, path, route_index(path, routes), 100.0, None, duration_ms)

    progress = 100.0
    if entered_at_ms is not None and now_ms is not None:
        progress = compute_progress(entered_at_ms, now_ms, duration_ms)
    return ReelSnapshot(
        True, path, route_index(path, routes), progress,
        next_route_url(path, routes), duration_ms,
    )


class ScheduledTick:
    """Handle of one interval job; cancel() removes it from the scheduler."""

    def __init__(self, job):
        self._job = job
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self._job.remove()
        except JobLookupError:
            logger.debug(f"Info reel job {self._job.id} already removed")


class IntervalScheduler:
    """Runs reel ticks as interval jobs on an APScheduler BackgroundScheduler."""

    def __init__(self, scheduler=None):
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)

    def call_every(self, interval, function):
        if not self.scheduler.running:
            self.scheduler.start()
        job = self.scheduler.add_job(
            function,
            trigger="interval",
            seconds=interval,
            max_instances=1,
            coalesce=True,
        )
        return ScheduledTick(job)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


class InfoReelController:
    """
    Drives a display through the reel.

    The controller owns at most one timer. Every location change goes
    through sync(), which disarms the old timer before arming a new one,
    so a tick belonging to an earlier page can never advance the display.
    Observers registered with subscribe() receive a ReelSnapshot after each
    mutation, while the controller still holds its lock.
    """

    def __init__(self, navigate, routes=None, duration_ms=REEL_DURATION_MS,
                 tick_interval_ms=TICK_INTERVAL_MS, clock=None, scheduler=None):
        self._navigate = navigate
        self._routes = list(REEL_ROUTES if routes is None else routes)
        if not self._routes:
            raise ValueError("Info reel needs at least one route")
        self._duration_ms = duration_ms
        self._tick_interval_ms = tick_interval_ms
        self._clock = clock or monotonic_ms
        self._scheduler = scheduler or IntervalScheduler()
        self._lock = threading.RLock()
        self._observers = []

        self._url = "/"
        self._active = False
        self._progress = 100.0
        self._entered_at = None
        self._timer = None
        self._generation = 0

    @property
    def routes(self):
        return list(self._routes)

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def current_index(self) -> int:
        return route_index(urlsplit(self._url).path or "/", self._routes)

    def subscribe(self, observer):
        with self._lock:
            self._observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)
        return unsubscribe

    def snapshot(self) -> ReelSnapshot:
        with self._lock:
            path = urlsplit(self._url).path or "/"
            return ReelSnapshot(
                self._active,
                path,
                route_index(path, self._routes),
                self._progress,
                next_route_url(path, self._routes) if self._active else None,
                self._duration_ms,
            )

    def sync(self, url):
        """Report a location change (initial mount, navigation or mode toggle)."""
        with self._lock:
            self._disarm()
            self._url = url
            self._active = is_info_reel(url)
            self._progress = 100.0
            if self._active:
                self._entered_at = self._clock()
                generation = self._generation
                self._timer = self._scheduler.call_every(
                    self._tick_interval_ms / 1000.0,
                    lambda: self._on_tick(generation),
                )
            else:
                self._entered_at = None
            self._notify()

    def stop(self):
        """Disarm the timer when the owning page goes away."""
        with self._lock:
            self._disarm()
            self._active = False
            self._progress = 100.0
            self._entered_at = None
            self._notify()

    def tick(self):
        """Re-evaluate elapsed time; advances when the window is used up."""
        with self._lock:
            if not self._active or self._entered_at is None:
                return
            self._progress = compute_progress(self._entered_at, self._clock(), self._duration_ms)
            self._notify()
            if self._progress <= 0:
                self.advance()

    def advance(self):
        with self._lock:
            path = urlsplit(self._url).path or "/"
            next_url = next_route_url(path, self._routes)
            logger.debug(f"Info reel advancing from {path} to {next_url}")
            generation = self._generation
            self._navigate(next_url)
            # The navigate callback may already have reported the new location
            if generation == self._generation:
                self.sync(next_url)

    def _on_tick(self, generation):
        with self._lock:
            if generation != self._generation:
                return
            self.tick()

    def _disarm(self):
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _notify(self):
        snapshot = self.snapshot()
        for observer in list(self._observers):
            observer(snapshot)
