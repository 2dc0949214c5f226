"""HTTP access to the dtm server and to business branches."""

import logging
import threading

import requests

from .consts import RESULT_FAILURE, RESULT_ONGOING, DtmError, FailureError, OngoingError, error_message_to_error
from .utils import may_replace_localhost, must_marshal

logger = logging.getLogger("dtmcli")

STATUS_OK = 200
STATUS_CONFLICT = 409
STATUS_TOO_EARLY = 425
STATUS_INTERNAL_SERVER_ERROR = 500

_clients = {}
_clients_lock = threading.Lock()


class HttpClient:
    """A requests session with a fixed timeout and dtm's request handling."""

    def __init__(self, timeout=0, session=None):
        self.timeout = timeout or None
        self.session = session if session is not None else requests.Session()

    def request(self, method, url, json=None, params=None, headers=None):
        """Send a request; ``json`` is serialized the way dtm expects."""
        target = may_replace_localhost(url)
        all_headers = dict(headers or {})
        data = None
        if json is not None:
            data = must_marshal(json)
            all_headers.setdefault("Content-Type", "application/json")
        logger.debug("requesting: %s %s %s resolved: %s", method, url, data, target)
        response = self.session.request(
            method,
            target,
            data=data,
            params=params,
            headers=all_headers,
            timeout=self.timeout,
        )
        logger.debug("requested: %d %s %s %s", response.status_code, method, response.url, response.text)
        return response


def get_http_client(timeout=0):
    """Return the shared client for ``timeout`` seconds (0 means no timeout)."""
    with _clients_lock:
        client = _clients.get(timeout)
        if client is None:
            client = HttpClient(timeout)
            _clients[timeout] = client
        return client


def http_resp_to_dtm_error(response):
    """Return the error a branch response stands for, or None on success."""
    code = response.status_code
    text = response.text.strip()
    if code == STATUS_TOO_EARLY or RESULT_ONGOING in text:
        return error_message_to_error(text, OngoingError)
    if code == STATUS_CONFLICT or RESULT_FAILURE in text:
        return error_message_to_error(text, FailureError)
    if code != STATUS_OK:
        return DtmError(text)
    return None


def result_to_http_json(result):
    """Return the HTTP status code and JSON body for a handler result."""
    if not isinstance(result, BaseException):
        return STATUS_OK, result
    body = {"error": str(result)}
    if isinstance(result, FailureError):
        return STATUS_CONFLICT, body
    if isinstance(result, OngoingError):
        return STATUS_TOO_EARLY, body
    return STATUS_INTERNAL_SERVER_ERROR, body


def must_gen_gid(server):
    """Ask the dtm server for a new global transaction id."""
    try:
        response = get_http_client(0).request("GET", server + "/newGid")
        data = response.json() if response.ok else {}
    except (requests.RequestException, ValueError) as exc:
        raise RuntimeError(f"newGid error: {exc}") from exc
    gid = data.get("gid", "") if isinstance(data, dict) else ""
    if not gid:
        raise RuntimeError(f"newGid error: resp: {response.text}")
    return gid