"""
HTTP client for the finance tracker REST API.
Handles bearer auth, retries, and error classification.
"""

import logging
import time
from typing import Optional

import requests

from . import config
from .entities import get_kind

log = logging.getLogger("finsync.api")

MIGRATION_PATH = "/api/migration/upload"
HEALTH_PATH = "/api/health"


class APIError(Exception):
    """Raised when the REST API call fails."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class NetworkError(APIError):
    """Timeout, connection failure or 5xx. Safe to retry later."""
    pass


class AuthenticationError(APIError):
    """401 or no session. Terminal until the user signs in again."""
    pass


class ValidationError(APIError):
    """The server rejected the request (4xx other than 401)."""
    pass


def normalise_base_url(url: str) -> str:
    """Strip trailing slashes and a trailing /api segment."""
    url = (url or "").rstrip("/")
    if url.endswith("/api"):
        url = url[:-len("/api")]
    return url


class APIClient:
    """Thin wrapper around requests for the per-entity REST endpoints."""

    def __init__(self, auth, base_url: str = None, timeout: int = None,
                 max_retries: int = None, backoff: float = 1.0):
        self.auth = auth
        self.base_url = normalise_base_url(base_url or config.API_URL)
        self.timeout = timeout or config.SYNC_TIMEOUT_SECONDS
        self.max_retries = max_retries or config.API_MAX_RETRIES
        self.backoff = backoff
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": f"finsync/{config.APP_VERSION}",
            "Accept": "application/json",
        })

    # ------------------------------------------------------------------
    # Entity resources
    # ------------------------------------------------------------------
    def fetch_all(self, kind) -> list[dict]:
        """GET the full collection for the signed-in user."""
        result = self._request("GET", get_kind(kind).api_path)
        if isinstance(result, dict):
            result = result.get("data") or []
        return [self._normalise(doc) for doc in result or []]

    def create(self, kind, payload: dict) -> dict:
        """POST a new document. The returned dict carries remoteId."""
        return self._normalise(self._request("POST", get_kind(kind).api_path, payload))

    def update(self, kind, remote_id: str, payload: dict) -> dict:
        path = f"{get_kind(kind).api_path}/{remote_id}"
        return self._normalise(self._request("PUT", path, payload))

    def delete(self, kind, remote_id: str):
        path = f"{get_kind(kind).api_path}/{remote_id}"
        self._request("DELETE", path)

    # ------------------------------------------------------------------
    # Bulk migration
    # ------------------------------------------------------------------
    def migrate(self, dataset: dict) -> dict:
        """Upload a whole exported dataset in one request."""
        result = self._request("POST", MIGRATION_PATH, dataset)
        return result if isinstance(result, dict) else {}

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------
    def is_online(self) -> bool:
        """Quick check whether the API is reachable."""
        try:
            self._request("GET", HEALTH_PATH, max_retries=1)
            return True
        except APIError:
            return False

    # ------------------------------------------------------------------
    # Internal request handler with retries
    # ------------------------------------------------------------------
    @staticmethod
    def _normalise(doc):
        if not isinstance(doc, dict):
            return doc
        doc = dict(doc)
        server_id = doc.pop("_id", None) or doc.get("remoteId")
        if server_id is not None:
            doc["remoteId"] = str(server_id)
        doc.pop("__v", None)
        return doc

    def _headers(self) -> dict:
        token = self.auth.token if self.auth is not None else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    @staticmethod
    def _error_message(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return (resp.text or "").strip()[:200] or f"HTTP {resp.status_code}"
        if isinstance(body, dict):
            return body.get("error") or body.get("message") or f"HTTP {resp.status_code}"
        return f"HTTP {resp.status_code}"

    def _request(self, method: str, path: str, json_body=None,
                 max_retries: int = None) -> Optional[object]:
        """
        Execute HTTP request with retry logic.
        Only transient failures are retried; 401 and other 4xx raise at once.
        """
        max_retries = max_retries or self.max_retries
        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(max_retries):
            try:
                resp = self.session.request(
                    method,
                    url,
                    json=json_body,
                    headers=self._headers(),
                    timeout=self.timeout,
                )

                if resp.status_code == 401:
                    message = self._error_message(resp)
                    if self.auth is not None:
                        self.auth.invalidate(f"{method} {path}: {message}")
                    raise AuthenticationError(message, status=401)

                if resp.status_code >= 500:
                    raise NetworkError(
                        f"Server error {resp.status_code}: {self._error_message(resp)}",
                        status=resp.status_code,
                    )

                if resp.status_code >= 400:
                    raise ValidationError(self._error_message(resp), status=resp.status_code)

                if resp.status_code == 204 or not resp.content:
                    return None
                try:
                    return resp.json()
                except ValueError:
                    return resp.text

            except requests.exceptions.Timeout:
                last_error = NetworkError(f"Request timed out after {self.timeout}s")
                log.warning(f"Timeout on attempt {attempt + 1}/{max_retries}: {method} {path}")

            except requests.exceptions.ConnectionError:
                last_error = NetworkError("No internet connection")
                log.warning(f"Connection error on attempt {attempt + 1}/{max_retries}: {method} {path}")

            except NetworkError as e:
                last_error = e
                log.warning(f"{e} on attempt {attempt + 1}/{max_retries}: {method} {path}")

            except APIError:
                raise  # Don't retry auth or validation errors

            except requests.exceptions.RequestException as e:
                last_error = NetworkError(str(e))
                log.warning(f"Request error on attempt {attempt + 1}: {e}")

            # Exponential backoff
            if attempt < max_retries - 1:
                time.sleep(self.backoff * (2 ** attempt))

        raise last_error or NetworkError("Request failed after retries")
