"""
In-memory fixed-window rate limiting for mutation endpoints.

Each named limiter counts requests per client key inside a fixed window and
admits at most ``max_requests`` per window. All limiters share one explicitly
owned store, which a background thread sweeps to reclaim expired windows.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
RATE_LIMIT_EXCEEDED = "Rate limit exceeded"
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60

# Header precedence: edge-injected first, generic proxy headers after.
CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-real-ip")
FORWARDED_FOR_HEADER = "x-forwarded-for"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateWindow:
    """Request counter for one client key and its window end (ms)."""

    count: int
    reset_time: int


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check."""

    admitted: bool
    remaining: int
    reset_time: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class LimiterConfig:
    """Window length and quota for one named action."""

    name: str
    window_ms: int
    max_requests: int
    key_func: Callable[[Any], str]

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be positive for limiter '{self.name}'")
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be positive for limiter '{self.name}'")


def _header_lookup(source: Any) -> Callable[[str], Any]:
    headers = getattr(source, "headers", source)
    if hasattr(headers, "getlist"):
        # Starlette Headers are already case-insensitive.
        return headers.get
    if not hasattr(headers, "items"):
        return lambda name: None
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return lowered.get


def _header_text(value: Any) -> str:
    # Multi-value adapters hand back lists; only the first text value counts.
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if isinstance(v, (str, bytes))), None)
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    return value.strip() if isinstance(value, str) else ""


def get_client_ip(source: Any) -> str:
    """
    Resolve a best-effort client IP from proxy headers.

    Args:
        source: A request object exposing ``headers``, or a header mapping.

    Returns:
        The first present value of cf-connecting-ip, x-real-ip, or the first
        x-forwarded-for entry, else ``"unknown"``. Sources without headers and
        non-text header values fall back to ``"unknown"``.
    """
    get = _header_lookup(source)

    for name in CLIENT_IP_HEADERS:
        value = _header_text(get(name))
        if value:
            return value

    first = _header_text(get(FORWARDED_FOR_HEADER)).split(",")[0].strip()
    if first:
        return first

    return UNKNOWN_CLIENT


def action_key(action: str) -> Callable[[Any], str]:
    """Build a key function that namespaces the client IP by action."""

    def key_func(source: Any) -> str:
        return f"{action}-{get_client_ip(source)}"

    return key_func


class RateLimitStore:
    """
    Shared counter map with a periodic reclamation thread.

    Every read-modify-write on the map happens under a single lock, so
    concurrent checks for one key never admit more than the quota.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._windows

    def hit(self, key: str, window_ms: int, max_requests: int) -> Decision:
        """Count one attempt for ``key`` and decide whether to admit it."""
        now = self.clock()

        with self._lock:
            current = self._windows.get(key)

            if current is None or current.reset_time <= now:
                reset_time = now + window_ms
                self._windows[key] = RateWindow(count=1, reset_time=reset_time)
                return Decision(True, max_requests - 1, reset_time)

            if current.count >= max_requests:
                return Decision(False, 0, current.reset_time, RATE_LIMIT_EXCEEDED)

            current.count += 1
            return Decision(True, max_requests - current.count, current.reset_time)

    def sweep(self, now: Optional[int] = None) -> int:
        """
        Remove every window that has already ended.

        Args:
            now: Reference time in ms; defaults to the store clock.

        Returns:
            Number of windows removed.
        """
        if now is None:
            now = self.clock()

        with self._lock:
            expired = [k for k, w in self._windows.items() if w.reset_time <= now]
            for key in expired:
                del self._windows[key]

        if expired:
            logger.debug("Reclaimed %d expired rate-limit windows", len(expired))
        return len(expired)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background sweep; a no-op if it is already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="rate-limit-sweep", daemon=True
        )
        self._thread.start()
        logger.info("Rate-limit sweep started (every %ss)", self.sweep_interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background sweep and wait for the thread to exit."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Rate-limit sweep did not stop within %ss", timeout)
            return
        self._thread = None
        logger.info("Rate-limit sweep stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Rate-limit sweep failed")


class RateLimiter:
    """A named limiter: one config applied against a shared store."""

    def __init__(self, config: LimiterConfig, store: RateLimitStore) -> None:
        self.config = config
        self.store = store

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def max_requests(self) -> int:
        return self.config.max_requests

    def check(self, request: Any) -> Decision:
        """Derive the caller's key from ``request`` and run the admission check."""
        return self.check_key(self.config.key_func(request))

    def check_key(self, key: str) -> Decision:
        return self.store.hit(key, self.config.window_ms, self.config.max_requests)

    __call__ = check


# (name, window in ms, max requests)
DEFAULT_LIMITS = (
    ("recipe-create", 60 * 1000, 2),
    ("recipe-update", 30 * 1000, 3),
    ("like", 10 * 1000, 5),
    ("comment", 30 * 1000, 3),
    ("image-upload", 60 * 1000, 1),
)


class RateLimiterRegistry(Mapping[str, RateLimiter]):
    """Named limiters sharing one store, looked up by action name."""

    def __init__(self, store: RateLimitStore) -> None:
        self.store = store
        self._limiters: Dict[str, RateLimiter] = {}

    def register(
        self,
        name: str,
        *,
        window_ms: int,
        max_requests: int,
        key_func: Optional[Callable[[Any], str]] = None,
    ) -> RateLimiter:
        if name in self._limiters:
            raise ValueError(f"Limiter '{name}' is already registered")
        config = LimiterConfig(
            name=name,
            window_ms=window_ms,
            max_requests=max_requests,
            key_func=key_func or action_key(name),
        )
        limiter = RateLimiter(config, self.store)
        self._limiters[name] = limiter
        return limiter

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._limiters)

    def __len__(self) -> int:
        return len(self._limiters)


def build_default_registry(store: RateLimitStore) -> RateLimiterRegistry:
    """Register the standard mutation limiters against ``store``."""
    registry = RateLimiterRegistry(store)
    for name, window_ms, max_requests in DEFAULT_LIMITS:
        registry.register(name, window_ms=window_ms, max_requests=max_requests)
    return registry
