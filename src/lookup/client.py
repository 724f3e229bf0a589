"""
Lookup service client.

Thin adapter over the external finder/verifier HTTP service.

Public API:

    LookupStatus = Literal["valid", "invalid", "risky", "unknown", "error"]

    @dataclass
    class LookupResult:
        status: LookupStatus
        email, confidence, message, catch_all, domain, mx, user_name
        raw: dict[str, Any]

    LookupClient.find(full_name, domain, role=None) -> LookupResult
    LookupClient.verify(email) -> LookupResult
    LookupClient.lookup(kind, item_input) -> LookupResult

Behavior:
  - One HTTP call per lookup, bounded by a per-call timeout; no retries here.
    The executor charges per attempt, so a failed call is a billed attempt,
    not a silent retry.
  - Transport errors, non-2xx responses and malformed payloads never raise;
    they come back as status="error" with a short note in `message` and `raw`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import httpx

from src.config import LookupConfig, app_config
from src.jobs.models import JobKind

log = logging.getLogger(__name__)

LookupStatus = Literal["valid", "invalid", "risky", "unknown", "error"]

_VERIFY_CONFIDENCE_PER_CONNECTION = 20


@dataclass
class LookupResult:
    status: LookupStatus
    email: str | None = None
    confidence: int = 0
    message: str | None = None
    catch_all: bool | None = None
    domain: str | None = None
    mx: str | None = None
    user_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("raw", None)
        return {k: v for k, v in out.items() if v is not None}


def _map_status(raw_status: Any, *, allowed: frozenset[str]) -> LookupStatus:
    """
    Collapse provider status strings into our LookupStatus.

    Unknown or missing values become "unknown" rather than "error": the call
    itself succeeded, the provider just had no verdict.
    """
    if raw_status is None:
        return "unknown"
    s = str(raw_status).strip().lower()
    if s in {"valid", "deliverable", "ok"}:
        s = "valid"
    elif s in {"invalid", "undeliverable"}:
        s = "invalid"
    elif s in {"catch_all", "catchall", "accept_all"}:
        s = "risky"
    if s in allowed:
        return s  # type: ignore[return-value]
    return "unknown"


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _error_result(message: str, **raw: Any) -> LookupResult:
    return LookupResult(status="error", message=message, raw={"error": message, **raw})


class LookupClient:
    """
    Small wrapper around httpx for the finder/verifier endpoints.

    A client owns one httpx.Client; share it across the items of a job and
    close it (or use it as a context manager) when done.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        timeout_s: float | None = None,
        connect_timeout_s: float | None = None,
        config: LookupConfig | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        cfg = config or app_config.lookup
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else cfg.api_key
        read_timeout = timeout_s if timeout_s is not None else cfg.timeout_seconds
        connect_timeout = (
            connect_timeout_s if connect_timeout_s is not None else cfg.connect_timeout_seconds
        )

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self._client = http or httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
        )

    def __enter__(self) -> LookupClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def close(self) -> None:
        self._client.close()

    # ---- transport ----------------------------------------------------------------

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any] | LookupResult:
        url = f"{self.base_url}{path}"
        try:
            resp = self._client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            log.warning("Lookup %s timed out: %s", path, exc)
            return _error_result(f"timeout: {exc}")
        except httpx.HTTPError as exc:
            log.warning("Lookup %s transport error: %s", path, exc)
            return _error_result(f"{type(exc).__name__}: {exc}")

        if resp.status_code >= 400:
            body = resp.text[:500]
            log.warning("Lookup %s returned HTTP %s", path, resp.status_code)
            return _error_result(
                f"API request failed: {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )

        try:
            data = resp.json()
        except ValueError:
            return _error_result("malformed JSON response", body=resp.text[:500])
        if not isinstance(data, dict):
            return _error_result("unexpected response shape", body=data)
        return data

    # ---- operations ---------------------------------------------------------------

    def find(self, full_name: str, domain: str, role: str | None = None) -> LookupResult:
        payload: dict[str, Any] = {"names": [full_name], "domain": domain}
        if role:
            payload["role"] = role
        data = self._post("/find", payload)
        if isinstance(data, LookupResult):
            return data

        status = _map_status(data.get("status"), allowed=frozenset({"valid", "invalid", "error"}))
        email = data.get("email") or None
        confidence = data.get("confidence")
        return LookupResult(
            status=status,
            email=email,
            confidence=_as_int(confidence, 95 if status == "valid" else 0),
            message=data.get("message") or "Email search completed",
            catch_all=data.get("catch_all"),
            domain=data.get("domain"),
            mx=data.get("mx"),
            user_name=data.get("user_name"),
            raw=data,
        )

    def verify(self, email: str) -> LookupResult:
        data = self._post("/verify", {"email": email})
        if isinstance(data, LookupResult):
            return data

        # The verdict is nested under "valid"; tolerate a flat payload too.
        verdict = data.get("valid") if isinstance(data.get("valid"), dict) else data
        status = _map_status(
            verdict.get("status"),
            allowed=frozenset({"valid", "invalid", "risky", "unknown", "error"}),
        )
        return LookupResult(
            status=status,
            email=email,
            confidence=_as_int(verdict.get("connections")) * _VERIFY_CONFIDENCE_PER_CONNECTION,
            message=verdict.get("message"),
            catch_all=bool(verdict.get("catch_all", False)),
            domain=verdict.get("domain"),
            mx=verdict.get("mx"),
            user_name=verdict.get("user_name"),
            raw=data,
        )

    def lookup(self, kind: JobKind | str, item_input: dict[str, Any]) -> LookupResult:
        kind = JobKind(kind)
        if kind is JobKind.FIND:
            return self.find(
                str(item_input.get("full_name") or ""),
                str(item_input.get("domain") or ""),
                item_input.get("role") or None,
            )
        return self.verify(str(item_input.get("email") or ""))


__all__ = ["LookupStatus", "LookupResult", "LookupClient"]
