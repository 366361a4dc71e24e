"""Push delivery: gateways and the bounded fan-out pool."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, NamedTuple, Optional

import requests

from .config import settings
from .errors import PushGatewayError

logger = logging.getLogger(__name__)

VALID_PLATFORMS = ("ios", "android")


class PushMessage(NamedTuple):
    token: str
    platform: str
    title: str
    body: str
    data: Dict[str, Any]


class PushGateway:
    """Platform-agnostic push delivery. `send` raises PushGatewayError on failure."""

    name = "base"

    def send(self, token: str, platform: str, title: str, body: str,
             data: Dict[str, Any], timeout: Optional[float] = None) -> None:
        raise NotImplementedError


class LoggingPushGateway(PushGateway):
    """Development gateway: logs the notification instead of delivering it."""

    name = "logging"

    def send(self, token, platform, title, body, data, timeout=None):
        if platform not in VALID_PLATFORMS:
            raise PushGatewayError(f"invalid platform {platform!r}", token=token)
        logger.info("Push (%s) %s - %s data=%s", platform, title, body, data)


class FCMPushGateway(PushGateway):
    """Delivers to Android and iOS devices through the FCM HTTP endpoint."""

    name = "fcm"

    def __init__(self, server_key: Optional[str] = None, url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.server_key = server_key or settings.FCM_SERVER_KEY
        self.url = url or settings.FCM_SEND_URL
        self.session = session or requests.Session()

    def send(self, token, platform, title, body, data, timeout=None):
        if platform not in VALID_PLATFORMS:
            raise PushGatewayError(f"invalid platform {platform!r}", token=token)
        if not self.server_key:
            raise PushGatewayError("FCM server key not configured", token=token)

        payload = {
            "to": token,
            "notification": {
                "title": title,
                "body": body,
                "sound": "default",
                "priority": "high",
            },
            # FCM data payload values must be strings
            "data": {k: str(v) for k, v in (data or {}).items()},
        }
        headers = {
            "Authorization": f"key={self.server_key}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers=headers,
                timeout=timeout or settings.PUSH_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise PushGatewayError(f"FCM request failed: {e}", token=token) from e

        if response.status_code != 200:
            raise PushGatewayError(
                f"FCM returned status {response.status_code}: {response.text[:200]}",
                token=token,
            )


_GATEWAYS = {
    LoggingPushGateway.name: LoggingPushGateway,
    FCMPushGateway.name: FCMPushGateway,
}


def get_push_gateway(provider: Optional[str] = None) -> PushGateway:
    provider = (provider or settings.PUSH_PROVIDER).lower()
    try:
        return _GATEWAYS[provider]()
    except KeyError:
        raise ValueError(f"Unknown push provider: {provider}") from None


class DispatchStats:
    """Thread-safe delivery counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sent = 0
        self.failed = 0
        self.jobs_failed = 0
        self.dropped = 0

    def record(self, ok: bool) -> None:
        with self._lock:
            if ok:
                self.sent += 1
            else:
                self.failed += 1

    def record_job_failure(self) -> None:
        with self._lock:
            self.jobs_failed += 1

    def record_dropped(self) -> None:
        with self._lock:
            self.dropped += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {"sent": self.sent, "failed": self.failed,
                    "jobs_failed": self.jobs_failed, "dropped": self.dropped}


class FanoutPool:
    """Bounded worker pool for fire-and-forget notification work.

    Jobs never raise into the caller; failures are logged. Each push call is
    bounded by `timeout`. At most `max_pending` jobs are queued or running;
    further submissions are dropped and counted.
    """

    def __init__(self, gateway: PushGateway, max_workers: Optional[int] = None,
                 timeout: Optional[float] = None, stats: Optional[DispatchStats] = None,
                 max_pending: Optional[int] = None):
        self.gateway = gateway
        self.timeout = timeout or settings.PUSH_TIMEOUT_SECONDS
        self.stats = stats or DispatchStats()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.PUSH_MAX_WORKERS,
            thread_name_prefix="hotspot-fanout",
        )
        self._pending = set()
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_pending or settings.PUSH_MAX_PENDING)

    def submit(self, fn: Callable, *args, **kwargs) -> Optional[Future]:
        if not self._slots.acquire(blocking=False):
            logger.warning("Fan-out queue full, dropping %s", getattr(fn, "__name__", fn))
            self.stats.record_dropped()
            return None
        try:
            future = self._executor.submit(self._guard, fn, *args, **kwargs)
        except RuntimeError:
            # executor already shut down
            self._slots.release()
            raise
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def push(self, message: PushMessage) -> Optional[Future]:
        return self.submit(self._deliver, message)

    def _deliver(self, message: PushMessage) -> bool:
        try:
            self.gateway.send(
                message.token, message.platform, message.title, message.body,
                message.data, timeout=self.timeout,
            )
        except PushGatewayError as e:
            logger.warning("Push to token %s... failed: %s", message.token[:12], e)
            self.stats.record(False)
            return False
        self.stats.record(True)
        return True

    def _guard(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Background notification job failed")
            self.stats.record_job_failure()
            return None

    def _discard(self, future: Future) -> None:
        self._slots.release()
        with self._lock:
            self._pending.discard(future)

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until every submitted job, including ones submitted by jobs, has finished."""
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            done, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)
