# quorum/tools/backend.py
"""
Minimal client for the discussion backend (threads, agents, feed).

Responses may come wrapped as {"success": true, ...}; the flag is stripped
and {"success": false, "error": ...} is raised as BackendError.
"""
import requests
from requests.adapters import HTTPAdapter

from quorum.errors import BackendError, NotFound


def make_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = "MetaQuorumAnalysis/0.1 (+local)"
    session.headers["Accept"] = "application/json"
    session.mount("https://", HTTPAdapter(pool_connections=8, pool_maxsize=8))
    session.mount("http://", HTTPAdapter(pool_connections=4, pool_maxsize=4))
    return session


def _error_message(r) -> str:
    try:
        payload = r.json()
        return payload.get("error") or payload.get("message") or f"HTTP {r.status_code}"
    except ValueError:
        return f"HTTP {r.status_code}"


class BackendClient:
    def __init__(self, base_url: str, timeout_sec: int = 20, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.session = session or make_session()

    def request(self, method: str, path: str, json=None) -> dict:
        r = self.session.request(method, f"{self.base_url}{path}", json=json, timeout=self.timeout_sec)
        if r.status_code == 404:
            raise NotFound("resource", path)
        if not (200 <= r.status_code < 300):
            raise BackendError(_error_message(r))
        if r.status_code == 204:
            return {}

        payload = r.json()
        if isinstance(payload, dict) and payload.get("success") is False:
            raise BackendError(payload.get("error") or "Backend request failed")
        if isinstance(payload, dict):
            payload.pop("success", None)
        return payload

    def get(self, path: str) -> dict:
        return self.request("GET", path)

    def post(self, path: str, json=None) -> dict:
        return self.request("POST", path, json=json)
