import time
from dataclasses import dataclass, field
from threading import Lock


@dataclass
class _KeyState:
    hits: list[float] = field(default_factory=list)
    lock_until: float = 0.0


class _KeyedWindow:
    def __init__(self, *, window_seconds: int):
        self.window_seconds = window_seconds
        self._states: dict[str, _KeyState] = {}
        self._lock = Lock()

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def _prune(self, state: _KeyState, now: float) -> None:
        cutoff = now - self.window_seconds
        state.hits = [ts for ts in state.hits if ts >= cutoff]


class LoginRateLimiter(_KeyedWindow):
    """Locks an identifier out after repeated failed logins."""

    def __init__(self, *, max_attempts: int, window_seconds: int, lock_seconds: int):
        super().__init__(window_seconds=window_seconds)
        self.max_attempts = max_attempts
        self.lock_seconds = lock_seconds

    def check(self, key: str) -> int:
        """Returns retry-after seconds when blocked, otherwise 0."""
        now = time.time()
        with self._lock:
            state = self._states.get(key)
            if not state:
                return 0
            self._prune(state, now)
            if state.lock_until > now:
                return int(state.lock_until - now) + 1
            return 0

    def register_failure(self, key: str) -> None:
        now = time.time()
        with self._lock:
            state = self._states.setdefault(key, _KeyState())
            self._prune(state, now)
            state.hits.append(now)
            if len(state.hits) >= self.max_attempts:
                state.lock_until = now + self.lock_seconds

    def register_success(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)


class SlidingWindowRateLimiter(_KeyedWindow):
    """Caps requests per key on the public feedback endpoints."""

    def __init__(self, *, max_requests: int, window_seconds: int):
        super().__init__(window_seconds=window_seconds)
        self.max_requests = max_requests

    def check_and_consume(self, key: str) -> int:
        now = time.time()
        with self._lock:
            state = self._states.setdefault(key, _KeyState())
            self._prune(state, now)
            if len(state.hits) >= self.max_requests:
                retry_after = int((min(state.hits) + self.window_seconds) - now) + 1
                return max(retry_after, 1)
            state.hits.append(now)
            return 0


def client_ip(request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
