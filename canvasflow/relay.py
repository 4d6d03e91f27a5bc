from __future__ import annotations

import http.client
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen
from uuid import uuid4

from .nodes import remote_payload


logger = logging.getLogger(__name__)

CHANNEL_NAME = "canvasflow_broadcast"
NAVIGATE = "NAVIGATE"
TARGET_ALL = "all"
TARGET_CURRENT_SESSION = "current-session"
NOTICE_LIMIT = 200
OUTBOX_LIMIT = 1000
SCHEMA_MISSING_CODES = frozenset({"42P01", "PGRST205"})


class BroadcastBus:
    """In-process stand-in for a browser broadcast channel.

    Queue subscribers receive ready-to-send SSE chunks; callable listeners
    receive the decoded message.
    """

    def __init__(self, name: str = CHANNEL_NAME, maxsize: int = 200) -> None:
        self.name = name
        self.maxsize = maxsize
        self._lock = threading.RLock()
        self._subscribers: list[queue.Queue[str]] = []
        self._listeners: list[Callable[[dict[str, Any]], None]] = []

    def subscribe(self) -> queue.Queue[str]:
        q: queue.Queue[str] = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue[str]) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def listen(self, callback: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _stop() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _stop

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers) + len(self._listeners)

    def publish(self, message: dict[str, Any]) -> int:
        data = f"data: {json.dumps(message, ensure_ascii=True)}\n\n"
        with self._lock:
            subscribers = list(self._subscribers)
            listeners = list(self._listeners)
        delivered = 0
        for q in subscribers:
            try:
                q.put_nowait(data)
                delivered += 1
            except queue.Full:
                continue
        for callback in listeners:
            try:
                callback(message)
                delivered += 1
            except Exception:
                logger.exception("Broadcast listener failed on %s", self.name)
        return delivered


class CrossTabRelay:
    """Publishes and filters NAVIGATE messages for one workspace session."""

    def __init__(self, bus: BroadcastBus, session_id: str, source_id: str | None = None) -> None:
        self.bus = bus
        self.session_id = session_id
        self.source_id = source_id or uuid4().hex
        self.target: str | None = None
        self.last_applied_at = 0

    @property
    def armed(self) -> bool:
        return self.target is not None

    def arm(self, target: str) -> None:
        target = (target or "").strip()
        if not target:
            raise ValueError("Broadcast target is required.")
        self.target = target

    def disarm(self) -> None:
        self.target = None

    def publish_navigation(self, view_id: str) -> dict[str, Any] | None:
        if self.target is None:
            return None
        message = {
            "type": NAVIGATE,
            "payload": {"viewId": view_id},
            "targetId": self.target,
            "sourceId": self.source_id,
            "sessionId": self.session_id,
            "sentAt": time.time_ns(),
        }
        self.bus.publish(message)
        return message

    def accepts(self, message: Any) -> bool:
        if not isinstance(message, dict) or message.get("type") != NAVIGATE:
            return False
        payload = message.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("viewId"), str):
            return False
        if message.get("sourceId") == self.source_id:
            return False
        target = message.get("targetId")
        if target == TARGET_ALL or target == self.session_id:
            pass
        elif target == TARGET_CURRENT_SESSION and message.get("sessionId") == self.session_id:
            pass
        else:
            return False
        sent_at = message.get("sentAt") or 0
        if not isinstance(sent_at, int) or sent_at < self.last_applied_at:
            logger.debug("Dropping stale broadcast from %s", message.get("sourceId"))
            return False
        return True

    def receive(self, message: Any) -> str | None:
        """View id to apply for an accepted message, or None."""
        if not self.accepts(message):
            return None
        self.last_applied_at = message.get("sentAt") or 0
        return message["payload"]["viewId"]


class RemoteError(Exception):
    def __init__(self, message: str, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


def is_schema_missing(error: RemoteError) -> bool:
    """True when the remote table has simply not been provisioned."""
    if error.code in SCHEMA_MISSING_CODES:
        return True
    text = (error.message or "").lower()
    return "does not exist" in text or "schema cache" in text or "relation" in text


@dataclass
class MirrorIntent:
    op: str  # insert | update | delete
    ids: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


class RestTransport:
    """PostgREST-style `items` table client."""

    def __init__(self, base_url: str, api_key: str | None = None, table: str = "items", timeout: float = 10.0) -> None:
        base = base_url.rstrip("/")
        if not base.endswith("/rest/v1"):
            base = f"{base}/rest/v1"
        self.base_url = base
        self.api_key = api_key
        self.table = table
        self.timeout = timeout

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "canvasflow"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, url: str, body: Any = None, prefer: str | None = None) -> int | None:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8") if body is not None else None
        req = Request(url, data=data, method=method, headers=self._headers(prefer))
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                return getattr(resp, "status", None)
        except HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            try:
                detail = json.loads(raw) if raw else {}
            except ValueError:
                detail = {}
            if not isinstance(detail, dict):
                detail = {}
            raise RemoteError(detail.get("message") or raw or str(exc), code=detail.get("code"), status=exc.code) from exc
        except URLError as exc:
            raise RemoteError(str(exc.reason)) from exc
        except (http.client.HTTPException, OSError) as exc:
            # timeouts, resets, dropped connections
            raise RemoteError(str(exc) or exc.__class__.__name__) from exc

    def send(self, intent: MirrorIntent, user_id: str) -> None:
        url = f"{self.base_url}/{self.table}"
        if intent.op == "insert":
            self._request("POST", url, intent.rows, prefer="return=minimal")
        elif intent.op == "update":
            self._request("POST", f"{url}?on_conflict=id", intent.rows, prefer="resolution=merge-duplicates,return=minimal")
        elif intent.op == "delete":
            ids = ",".join(quote(i, safe="") for i in intent.ids)
            self._request("DELETE", f"{url}?id=in.({ids})&user_id=eq.{quote(user_id, safe='')}")
        else:
            raise ValueError(f"Unknown mirror op: {intent.op}")


class RemoteMirror:
    """Best-effort copy of local mutations to the remote table.

    Local state is already durable when an intent is queued; failures here only
    produce notices. A missing remote schema puts the mirror to sleep for the
    rest of the process.
    """

    def __init__(
        self,
        transport: Any = None,
        user_id: str | None = None,
        notice_limit: int = NOTICE_LIMIT,
        outbox_limit: int = OUTBOX_LIMIT,
    ) -> None:
        self.transport = transport
        self.user_id = user_id
        self.notice_limit = notice_limit
        self.outbox: queue.Queue[MirrorIntent] = queue.Queue(maxsize=outbox_limit)
        self.notices: list[dict[str, Any]] = []
        self.dormant = False
        self.sent = 0
        self.dropped = 0
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def enabled(self) -> bool:
        return self.transport is not None and bool(self.user_id) and not self.dormant

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def intent_for(self, mutation: Any) -> MirrorIntent | None:
        if mutation.op == "delete":
            return MirrorIntent("delete", ids=list(mutation.ids)) if mutation.ids else None
        if mutation.op in ("insert", "update", "move", "reorder"):
            op = "insert" if mutation.op == "insert" else "update"
            rows = [remote_payload(n, self.user_id or "") for n in mutation.nodes]
            return MirrorIntent(op, ids=[n.id for n in mutation.nodes], rows=rows) if rows else None
        return None

    def on_mutation(self, mutation: Any) -> None:
        if not self.enabled:
            self.dropped += 1
            return
        intent = self.intent_for(mutation)
        if intent is None:
            return
        try:
            self.outbox.put_nowait(intent)
        except queue.Full:
            self.dropped += 1
            logger.warning("Mirror outbox full; dropping %s for %s", intent.op, intent.ids[:5])

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="canvasflow-mirror", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                intent = self.outbox.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._deliver(intent)
            except Exception as exc:
                logger.exception("Mirror worker failed on %s for %s", intent.op, intent.ids[:5])
                self._add_notice(intent, RemoteError(str(exc) or exc.__class__.__name__))

    def flush(self) -> int:
        """Drain the outbox on the calling thread; returns how many intents were handled."""
        handled = 0
        while True:
            try:
                intent = self.outbox.get_nowait()
            except queue.Empty:
                return handled
            self._deliver(intent)
            handled += 1

    def _deliver(self, intent: MirrorIntent) -> None:
        with self._send_lock:
            if not self.enabled:
                self.dropped += 1
                return
            try:
                self.transport.send(intent, self.user_id)
            except RemoteError as exc:
                if is_schema_missing(exc):
                    logger.info("Remote items table not provisioned (%s); mirroring disabled", exc.code or exc.message)
                    self.dormant = True
                    self.dropped += self._drain()
                    return
                logger.warning("Remote %s failed for %s: %s", intent.op, intent.ids[:5], exc.message)
                self._add_notice(intent, exc)
                return
            self.sent += 1

    def _drain(self) -> int:
        count = 0
        while True:
            try:
                self.outbox.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def _add_notice(self, intent: MirrorIntent, error: RemoteError) -> None:
        with self._lock:
            self.notices.append(
                {
                    "op": intent.op,
                    "ids": list(intent.ids),
                    "code": error.code,
                    "status": error.status,
                    "message": error.message,
                    "at": time.time(),
                }
            )
            if len(self.notices) > self.notice_limit:
                del self.notices[: len(self.notices) - self.notice_limit]

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "configured": self.transport is not None and bool(self.user_id),
                "enabled": self.enabled,
                "running": self.running,
                "dormant": self.dormant,
                "pending": self.outbox.qsize(),
                "sent": self.sent,
                "dropped": self.dropped,
                "notices": list(self.notices),
            }
