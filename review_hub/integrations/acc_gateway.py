"""
Autodesk Construction Cloud Gateway.

All outbound HTTP calls to the ACC RFI and Submittal REST APIs go through
this class.  Direct `requests` calls in services or blueprints are FORBIDDEN.

  - Bearer token injection (the service decrypts the link's stored token
    and sets it on `link._plaintext_token` just before the call)
  - Retry: max 2 attempts, exponential backoff (1 s → 4 s); 4xx other
    than 408/429 is returned immediately
  - Timeout: ACC_REQUEST_TIMEOUT (default 30 s)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per link
  - Structured GatewayResult returned to the service, never raises

Threading: circuit breaker state is an in-memory dict keyed by link id.

Testability: pass a mock `session` to ACCGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5
_CB_WINDOW_SECONDS = 60
_CB_OPEN_DURATION_SECONDS = 30

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]
_RETRYABLE_CLIENT_STATUSES = {408, 429}

_DEFAULT_TIMEOUT = 30
_DEFAULT_BASE_URL = "https://developer.api.autodesk.com"
_DEFAULT_PAGE_SIZE = 50

# module → (API path segment, collection name)
_MODULE_PATHS = {
    "request": "/construction/rfis/v1/projects/{project_id}/rfis",
    "submittal": "/construction/submittals/v1/projects/{project_id}/submittals",
}


class GatewayResult:
    """Structured return value from ACCGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body (dict or list), else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
        payload_hash:   SHA-256 of the serialised request payload (hex).
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int,
        payload_hash: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.payload_hash = payload_hash

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code}>"


class ACCGateway:
    """ACC REST API gateway.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from review_hub.integrations.acc_gateway import acc_gateway
        result = acc_gateway.list_items(link, "request")
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        base_url: str | None = None,
        timeout: int | None = None,
        page_size: int | None = None,
    ) -> None:
        self._session: requests.Session | None = session
        self._base_url = base_url
        self._timeout = timeout
        self._page_size = page_size

        # link_id → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[int, dict] = {}

    # ── Settings ─────────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _setting(self, override, key: str, default):
        if override is not None:
            return override
        if has_app_context():
            return current_app.config.get(key, default)
        return default

    @property
    def base_url(self) -> str:
        return self._setting(self._base_url, "ACC_API_BASE_URL", _DEFAULT_BASE_URL).rstrip("/")

    @property
    def timeout(self) -> int:
        return int(self._setting(self._timeout, "ACC_REQUEST_TIMEOUT", _DEFAULT_TIMEOUT))

    @property
    def page_size(self) -> int:
        return int(self._setting(self._page_size, "ACC_PAGE_SIZE", _DEFAULT_PAGE_SIZE))

    def collection_url(self, link: Any, module: str) -> str:
        try:
            path = _MODULE_PATHS[module]
        except KeyError:
            raise ValueError(f"Unknown ACC module: {module}") from None
        return self.base_url + path.format(project_id=link.acc_project_id)

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _ensure_cb_entry(self, link_id: int) -> dict:
        if link_id not in self._cb_state:
            self._cb_state[link_id] = {"failures": [], "open_until": None}
        return self._cb_state[link_id]

    def _circuit_closed(self, link_id: int) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        state = self._ensure_cb_entry(link_id)
        now = datetime.now(timezone.utc)

        if state["open_until"] and now < state["open_until"]:
            logger.warning("Circuit open for link=%s until %s", link_id, state["open_until"])
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        state["failures"] = [f for f in state["failures"] if f >= window_start]

        if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
            state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Circuit opened for link=%s: %d failures in %ds window",
                link_id, len(state["failures"]), _CB_WINDOW_SECONDS,
            )
            return False

        return True

    def _record_failure(self, link_id: int) -> None:
        self._ensure_cb_entry(link_id)["failures"].append(datetime.now(timezone.utc))

    def _record_success(self, link_id: int) -> None:
        state = self._ensure_cb_entry(link_id)
        state["failures"].clear()
        state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _compute_payload_hash(self, payload: dict | list | None) -> str | None:
        if payload is None:
            return None
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def request(
        self,
        method: str,
        url: str,
        *,
        link: Any,
        json_body: dict | list | None = None,
        params: dict | None = None,
        files: dict | None = None,
    ) -> GatewayResult:
        """Execute an authenticated request to ACC with retries.

        1. Circuit breaker check, reject immediately if the link is paused.
        2. Bearer token injection from ``link._plaintext_token``.
        3. On 2xx return a success result.
        4. On 5xx / 408 / 429 / network error record a failure and retry
           with backoff; other 4xx answers are final.

        Returns:
            GatewayResult. Never raises; callers check ``.ok``.
        """
        link_id = link.id
        if not self._circuit_closed(link_id):
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error="Circuit breaker is open, ACC calls temporarily suspended",
                duration_ms=0,
            )

        token = getattr(link, "_plaintext_token", None)
        if not token:
            return GatewayResult(
                ok=False, status_code=None, data=None,
                error=f"No access token available for link {link_id}",
                duration_ms=0,
            )

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if files is None:
            headers["Content-Type"] = "application/json"

        kwargs: dict[str, Any] = {"headers": headers, "timeout": self.timeout}
        if json_body is not None:
            kwargs["json"] = json_body
        if params:
            kwargs["params"] = params
        if files is not None:
            kwargs["files"] = files

        payload_hash = self._compute_payload_hash(json_body)
        last_error = "Unknown error"
        last_status: int | None = None
        started = time.perf_counter()

        for attempt in range(_RETRY_MAX + 1):
            try:
                resp = self.session.request(method, url, **kwargs)
                last_status = resp.status_code
                duration_ms = int((time.perf_counter() - started) * 1000)

                if resp.ok:
                    self._record_success(link_id)
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(
                        ok=True, status_code=resp.status_code, data=data,
                        error=None, duration_ms=duration_ms, payload_hash=payload_hash,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                if resp.status_code < 500 and resp.status_code not in _RETRYABLE_CLIENT_STATUSES:
                    logger.warning(
                        "ACC request rejected status=%d url=%s link=%s",
                        resp.status_code, url, link_id,
                    )
                    return GatewayResult(
                        ok=False, status_code=resp.status_code, data=None,
                        error=last_error, duration_ms=duration_ms, payload_hash=payload_hash,
                    )

                self._record_failure(link_id)
                logger.warning(
                    "ACC request failed attempt=%d/%d status=%d url=%s link=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, url, link_id,
                )

            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                self._record_failure(link_id)
                logger.warning(
                    "ACC request timed out attempt=%d/%d url=%s link=%s",
                    attempt + 1, _RETRY_MAX + 1, url, link_id,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure(link_id)
                logger.warning(
                    "ACC network error attempt=%d/%d url=%s link=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, url, link_id, last_error,
                )

            if attempt < _RETRY_MAX:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying ACC request in %ss (attempt %d)", sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False, status_code=last_status, data=None, error=last_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
            payload_hash=payload_hash,
        )

    # ── ACC operations ────────────────────────────────────────────────────────

    def list_items(self, link: Any, module: str) -> GatewayResult:
        """GET every RFI / submittal of the link's ACC project.

        Follows offset/limit pagination of
        ``{"data": [...], "pagination": {"limit", "offset", "totalResults"}}``
        until all pages are read.

        Returns:
            GatewayResult.data = list of raw item dicts (all pages), or the
            first failing page's result.
        """
        url = self.collection_url(link, module)
        limit = self.page_size
        offset = 0
        items: list[dict] = []
        total_ms = 0

        while True:
            result = self.request(
                "GET", url, link=link, params={"limit": limit, "offset": offset},
            )
            total_ms += result.duration_ms
            if not result.ok:
                return result

            body = result.data if isinstance(result.data, dict) else {}
            page = body.get("data") or body.get("results") or []
            items.extend(page)

            pagination = body.get("pagination") or {}
            total = pagination.get("totalResults")
            offset += len(page)
            if not page or total is None or offset >= int(total):
                break

        logger.info(
            "Fetched %d %s items from ACC project=%s link=%s",
            len(items), module, link.acc_project_id, link.id,
        )
        return GatewayResult(
            ok=True, status_code=result.status_code, data=items,
            error=None, duration_ms=total_ms,
        )

    def update_status(self, link: Any, module: str, item_id: str, status: str) -> GatewayResult:
        """PATCH the item's status in ACC."""
        url = f"{self.collection_url(link, module)}/{item_id}"
        return self.request("PATCH", url, link=link, json_body={"status": status})

    def post_response(
        self, link: Any, module: str, item_id: str, text: str, status: str | None = None,
    ) -> GatewayResult:
        """POST the official response text to ACC."""
        url = f"{self.collection_url(link, module)}/{item_id}/responses"
        body = {"text": text}
        if status:
            body["status"] = status
        return self.request("POST", url, link=link, json_body=body)

    def upload_attachment(
        self, link: Any, module: str, item_id: str, file_name: str, content: bytes,
    ) -> GatewayResult:
        """POST one attachment (multipart/form-data) to the ACC item."""
        url = f"{self.collection_url(link, module)}/{item_id}/attachments"
        files = {"file": (file_name, content, "application/octet-stream")}
        return self.request("POST", url, link=link, files=files)


# Module-level singleton; services import this instance
# In tests, override via:
#   from review_hub.integrations import acc_gateway as gw_module
#   gw_module.acc_gateway = ACCGateway(session=mock_session)
acc_gateway = ACCGateway()
