"""Capability executor interface and its HTTP implementation."""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from thrag.config import SETTINGS
from thrag.errors import CapabilityTimeout, CapabilityUnavailable

logger = logging.getLogger(__name__)


class CapabilityExecutor(Protocol):
    def invoke(self, capability: str, session_id: str, input_text: str) -> str:
        ...


class HttpCapabilityExecutor:
    """Invokes capabilities hosted behind an HTTP endpoint.

    ``POST {base_url}/capabilities/{capability}/invoke`` with
    ``{"session_id": ..., "input_text": ...}``; the response is either a JSON
    object with an ``output`` field or plain text.
    """

    def __init__(self, base_url: str, timeout: float | None = None, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = SETTINGS.capability_timeout_seconds if timeout is None else timeout
        self._http = session or requests.Session()

    def invoke(self, capability: str, session_id: str, input_text: str) -> str:
        url = f"{self.base_url}/capabilities/{capability}/invoke"
        try:
            r = self._http.post(url, json={"session_id": session_id, "input_text": input_text}, timeout=self.timeout)
            r.raise_for_status()
        except requests.Timeout as e:
            raise CapabilityTimeout(f"{capability} did not answer within {self.timeout:.0f}s") from e
        except requests.RequestException as e:
            raise CapabilityUnavailable(f"{capability} unavailable: {e}") from e

        if "application/json" in r.headers.get("content-type", ""):
            body = r.json()
            if isinstance(body, dict) and "output" in body:
                return str(body["output"])
        return r.text


class UnconfiguredExecutor:
    """Stand-in when no executor URL is set; every call is unavailable."""

    def invoke(self, capability: str, session_id: str, input_text: str) -> str:
        raise CapabilityUnavailable(f"{capability}: no capability executor configured (THRAG_EXECUTOR_URL)")
