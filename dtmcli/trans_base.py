"""State shared by all transaction types and the calls they make to dtm."""

import dataclasses
from dataclasses import field

from .consts import JRPC, RESULT_FAILURE, DtmError
from .http import STATUS_OK, get_http_client, http_resp_to_dtm_error
from .utils import escape_get


@dataclasses.dataclass
class BranchIDGen:
    """Generates sub branch ids below ``branch_id``."""

    branch_id: str = ""
    sub_branch_id: int = 0

    def new_sub_branch_id(self):
        if self.sub_branch_id >= 99:
            raise ValueError("branch id is larger than 99")
        if len(self.branch_id) >= 20:
            raise ValueError("total branch id is longer than 20")
        self.sub_branch_id += 1
        return self.current_sub_branch_id()

    def current_sub_branch_id(self):
        return f"{self.branch_id}{self.sub_branch_id:02d}"


@dataclasses.dataclass
class TransOptions:
    """Options a transaction hands to the dtm server."""

    wait_result: bool = False
    timeout_to_fail: int = 0  # seconds, xa and tcc
    request_timeout: int = 0  # seconds
    retry_interval: int = 0  # seconds
    branch_headers: dict = field(default_factory=dict)
    concurrent: bool = False
    retry_limit: int = 0
    retry_count: int = 0


@dataclasses.dataclass(kw_only=True)
class TransBase(TransOptions):
    """The fields every transaction type carries."""

    gid: str = ""
    trans_type: str = ""
    dtm: str = ""
    custom_data: str = ""
    steps: list = field(default_factory=list)
    payloads: list = field(default_factory=list)
    bin_payloads: list = field(default_factory=list)
    branch_id_gen: BranchIDGen = field(default_factory=BranchIDGen)
    op: str = ""
    query_prepared: str = ""
    protocol: str = ""
    rollback_reason: str = ""

    def with_global_trans_request_timeout(self, timeout):
        self.request_timeout = timeout

    def with_retry_limit(self, retry_limit):
        self.retry_limit = retry_limit

    def to_json(self):
        """Return the body sent to the dtm server for this transaction."""
        data = {"gid": self.gid, "trans_type": self.trans_type}
        if self.custom_data:
            data["custom_data"] = self.custom_data
        for name in ("wait_result", "timeout_to_fail", "request_timeout", "retry_interval", "branch_headers"):
            value = getattr(self, name)
            if value:
                data[name] = value
        data["concurrent"] = self.concurrent
        for name in ("retry_limit", "retry_count", "steps", "payloads", "query_prepared"):
            value = getattr(self, name)
            if value:
                data[name] = value
        data["protocol"] = self.protocol
        if self.rollback_reason:
            data["rollback_reason"] = self.rollback_reason
        return data


def trans_base_from_query(query):
    """Build a TransBase from the query of a branch request."""
    return TransBase(
        gid=escape_get(query, "gid"),
        trans_type=escape_get(query, "trans_type"),
        dtm=escape_get(query, "dtm"),
        branch_id_gen=BranchIDGen(branch_id=escape_get(query, "branch_id")),
    )


def _call_dtm_jrpc(tb, body, operation):
    client = get_http_client(tb.request_timeout)
    response = client.request(
        "POST",
        tb.dtm,
        json={"jsonrpc": "2.0", "id": "no-use", "method": operation, "params": body},
    )
    try:
        result = response.json()
    except ValueError:
        raise DtmError(response.text.strip()) from None
    if response.status_code != STATUS_OK or (isinstance(result, dict) and result.get("error") is not None):
        raise DtmError(response.text.strip())
    return response


def trans_call_dtm_ext(tb, body, operation):
    """Post ``body`` to the dtm ``operation``; raise DtmError if it is refused."""
    if tb.protocol == JRPC:
        return _call_dtm_jrpc(tb, body, operation)
    client = get_http_client(tb.request_timeout)
    response = client.request("POST", f"{tb.dtm}/{operation}", json=body)
    text = response.text.strip()
    if response.status_code != STATUS_OK or RESULT_FAILURE in text:
        raise DtmError(text)
    return response


def trans_call_dtm(tb, operation):
    """Send the whole transaction to the dtm ``operation``."""
    trans_call_dtm_ext(tb, tb, operation)


def trans_register_branch(tb, added, operation):
    """Register a branch of ``tb`` with the fields in ``added``."""
    body = {"gid": tb.gid, "trans_type": tb.trans_type, **added}
    trans_call_dtm_ext(tb, body, operation)


def trans_request_branch(tb, method, body, branch_id, op, url):
    """Call a business branch; return None when ``url`` is empty."""
    if not url:
        return None
    query = {
        "dtm": tb.dtm,
        "gid": tb.gid,
        "branch_id": branch_id,
        "trans_type": tb.trans_type,
        "op": op,
    }
    if tb.trans_type == "xa":
        query["phase2_url"] = url
    return get_http_client(0).request(method, url, json=body, params=query, headers=tb.branch_headers)


def request_branch(tb, method, body, branch_id, op, url):
    """Call a business branch and raise the dtm error its response stands for."""
    response = trans_request_branch(tb, method, body, branch_id, op, url)
    if response is not None:
        error = http_resp_to_dtm_error(response)
        if error is not None:
            raise error
    return response