#!/usr/bin/env python3
"""
eerosync - eero Cloud API Client
Authenticated HTTP calls against the eero cloud, envelope unwrapping,
single-shot token refresh on 401, resource-link resolution and
best-scoring candidate endpoint probing.
"""
import logging
import threading
from urllib.parse import urlparse

import requests

from eerosync import values
from eerosync.config import API_URL, HTTP_TIMEOUT, VERSION
from eerosync.errors import (
    EeroAPIError,
    InvalidPayload,
    InvalidResponse,
    ServerError,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

LOGIN_PATH = "/2.2/login"
VERIFY_PATH = "/2.2/login/verify"
REFRESH_PATH = "/2.2/login/refresh"
ACCOUNT_PATH = "/2.2/account"

DEFAULT_CREDENTIAL_KEY = "session"


def resolve_error_message(payload, response):
    """Pick the most specific error text the API gave us."""
    meta = payload.get('meta') if isinstance(payload, dict) else None
    if isinstance(meta, dict):
        error = values.string(meta, ['error'])
        if error:
            code = values.integer(meta, ['code'])
            return f"{error} ({code})" if code is not None else error
    message = values.string(payload, ['message']) if isinstance(payload, dict) else None
    if message:
        return message
    reason = getattr(response, 'reason', None)
    if isinstance(reason, str) and reason.strip():
        return reason
    return "Unknown API error"


class EeroAPI:
    """Interface to the eero cloud API for a single account session.

    Token mutations (login, verify, refresh, logout) are serialized under a
    lock. Plain calls only read the token and may run from several threads.
    """

    def __init__(self, credential_store=None, api_url=None, session=None,
                 timeout=None, credential_key=DEFAULT_CREDENTIAL_KEY):
        self.session = session or requests.Session()
        self.api_url = api_url or API_URL
        self.api_base = "https://" + self.api_url
        self.timeout = timeout or HTTP_TIMEOUT
        self.credentials = credential_store
        self.credential_key = credential_key
        self._token = None
        self._verified = False
        self._token_lock = threading.Lock()
        self._refresh_lock = threading.Lock()

    # ── session state ──────────────────────────────────────────────────────

    @property
    def token(self):
        return self._token

    @property
    def is_authenticated(self):
        return bool(self._token) and self._verified

    @property
    def awaiting_verification(self):
        return bool(self._token) and not self._verified

    def restore_session(self):
        """Load a previously verified token from the credential store."""
        if self.credentials is None:
            return False
        try:
            token = self.credentials.get(self.credential_key)
        except Exception as e:
            logger.error("Credential load error: %s", str(e))
            return False
        if not token:
            return False
        with self._token_lock:
            self._token = token
            self._verified = True
        logger.info("Restored eero session from credential store")
        return True

    def _store_token(self, token, verified):
        with self._token_lock:
            self._token = token
            self._verified = verified
        if verified and self.credentials is not None:
            try:
                self.credentials.put(self.credential_key, token)
            except Exception as e:
                logger.error("Credential save error: %s", str(e))

    def logout(self):
        with self._token_lock:
            self._token = None
            self._verified = False
        if self.credentials is not None:
            try:
                self.credentials.delete(self.credential_key)
            except Exception as e:
                logger.error("Credential delete error: %s", str(e))
        logger.info("Signed out of eero")

    # ── HTTP ───────────────────────────────────────────────────────────────

    def get_headers(self):
        return {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': f'eerosync/{VERSION}'
        }

    def resolve_url(self, path_or_url):
        """Absolute resource links are used as-is; paths are joined to the API base."""
        if urlparse(path_or_url).scheme:
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = "/" + path_or_url
        return self.api_base + path_or_url

    def call(self, method, path_or_url, json=None, requires_auth=True,
             retry_on_auth_failure=True, params=None):
        """Issue one API call and return the unwrapped ``data`` payload."""
        url = self.resolve_url(path_or_url)
        headers = self.get_headers()
        token = self._token
        if requires_auth:
            if not token:
                raise Unauthenticated()
            headers['Cookie'] = f"s={token}"

        try:
            response = self.session.request(
                method, url, json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.warning("%s %s transport error: %s", method, url, str(e))
            raise InvalidResponse(f"Invalid response from eero API: {e}") from e

        status = response.status_code
        payload = None
        body = response.content or b""
        if body.strip():
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if 200 <= status < 300:
            if payload is None:
                if body.strip():
                    raise InvalidResponse()
                return {}
            if isinstance(payload, dict) and 'data' in payload:
                return payload['data']
            return payload

        if (status == 401 and requires_auth and retry_on_auth_failure
                and urlparse(url).path != REFRESH_PATH):
            logger.info("eero session expired, refreshing token")
            self.refresh_session(stale_token=token)
            return self.call(method, path_or_url, json=json, requires_auth=requires_auth,
                             retry_on_auth_failure=False, params=params)

        message = resolve_error_message(payload, response)
        logger.debug("%s %s failed with %d: %s", method, url, status, message)
        raise ServerError(status, message)

    def get(self, path_or_url, params=None):
        return self.call("GET", path_or_url, params=params)

    # ── authentication ─────────────────────────────────────────────────────

    def login(self, login):
        """Start the verification-code flow. The returned token is held until verify()."""
        login = (login or "").strip()
        if not login:
            raise InvalidPayload("A login (email or phone) is required.")
        data = self.call("POST", LOGIN_PATH, json={"login": login}, requires_auth=False)
        token = values.string(data, ['user_token'])
        if not token:
            raise InvalidPayload()
        self._store_token(token, verified=False)
        logger.info("Verification code requested for eero login")
        return token

    def verify(self, code):
        """Complete login with the emailed/texted code and persist the session."""
        code = (code or "").strip()
        if not code:
            raise InvalidPayload("A verification code is required.")
        if not self._token:
            raise Unauthenticated()
        data = self.call("POST", VERIFY_PATH, json={"code": code}, retry_on_auth_failure=False)
        self._store_token(self._token, verified=True)
        logger.info("eero login verified")
        return {
            "name": values.string(data, ['name']),
            "log_id": values.string(data, ['log_id']),
        }

    def refresh_session(self, stale_token=None):
        """Exchange the current token for a fresh one.

        When *stale_token* is given and another caller has already rotated the
        token, the refresh is skipped and the newer token is returned.
        """
        with self._refresh_lock:
            current = self._token
            if stale_token is not None and current and current != stale_token:
                logger.debug("Session token already refreshed")
                return current
            data = self.call("POST", REFRESH_PATH, retry_on_auth_failure=False)
            token = values.string(data, ['user_token'])
            if not token:
                raise InvalidPayload()
            self._store_token(token, verified=True)
            logger.info("eero session token refreshed")
            return token

    # ── resource traversal ─────────────────────────────────────────────────

    def fetch_resource_data(self, resources, keys, fallback_path, params=None):
        """GET the first linked resource among *keys*, else the conventional path."""
        resources = resources or {}
        path = next((resources[k] for k in keys if resources.get(k)), fallback_path)
        return self.call("GET", path, params=params)

    def probe_candidates(self, candidates, scorer=len):
        """
        Try each candidate path in order and keep the best-scoring row list.

        Returns ``(rows, path)`` for the winner, or ``(None, None)`` when every
        candidate failed. Ties keep the earlier candidate.
        """
        best_rows, best_path, best_score = None, None, None
        for path in candidates:
            try:
                rows = values.normalize_object_array(self.call("GET", path))
            except EeroAPIError as e:
                logger.debug("Candidate %s failed: %s", path, str(e))
                continue
            score = scorer(rows)
            if best_score is None or score > best_score:
                best_rows, best_path, best_score = rows, path, score
        if best_path is not None:
            logger.debug("Selected candidate %s (score %s)", best_path, best_score)
        return best_rows, best_path
