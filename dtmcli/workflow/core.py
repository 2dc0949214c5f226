"""Workflow transactions: steps recorded at dtm so that a run can be resumed."""

import base64
import dataclasses
import logging
from collections.abc import Callable

import requests

from ..barrier import BranchBarrier
from ..consts import (
    OP_ACTION,
    OP_COMMIT,
    OP_ROLLBACK,
    PROTOCOL_HTTP,
    STATUS_FAILED,
    STATUS_SUCCEED,
    DtmError,
    FailureError,
    error_message_to_error,
)
from ..http import HttpClient, get_http_client
from ..trans_base import BranchIDGen, TransBase, trans_call_dtm_ext, trans_register_branch
from ..utils import must_marshal_string
from ..xa_base import xa_handle_local_trans, xa_handle_phase2
from .steps import (
    StepResult,
    _step_result_to_http,
    http_resp_to_dtm_error,
    step_result_from_http,
    step_result_from_local,
    wf_error_to_status,
)

logger = logging.getLogger("dtmcli")

_OP_BUSINESS = "business"


@dataclasses.dataclass
class Options:
    """Options of a workflow.

    ``http_resp_to_dtm_error`` turns a branch response into its body and
    dtm error (409 means failure, 425 means ongoing by default).
    ``compensate_error_branch`` decides whether a branch that failed is
    itself rolled back; a timed out request may have succeeded, so then
    it should be.
    """

    http_resp_to_dtm_error: Callable = http_resp_to_dtm_error
    compensate_error_branch: bool = False


@dataclasses.dataclass
class _Phase2Item:
    branch_id: str
    op: str
    fn: Callable


def _field(mapping, name):
    """Look up ``name`` in a JSON object, ignoring case and underscores."""
    if not isinstance(mapping, dict):
        return None
    wanted = name.replace("_", "").lower()
    for key, value in mapping.items():
        if key.replace("_", "").lower() == wanted:
            return value
    return None


def _decode_bin(value):
    if not value:
        return b""
    return base64.b64decode(value)


def _as_text(data):
    if data is None:
        return ""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


class Workflow(TransBase):
    """A workflow: a function whose branches and their results dtm records."""

    def __init__(self, name, gid, data=None, dtm="", query_prepared=""):
        super().__init__(
            gid=gid,
            trans_type="workflow",
            dtm=dtm,
            query_prepared=query_prepared,
            protocol=PROTOCOL_HTTP,
            custom_data=must_marshal_string({"name": name, "data": data}),
        )
        self.name = name
        self.options = Options()
        self._http = HttpClient()
        self._id_gen = BranchIDGen()
        self._current_branch = ""
        self._current_action_added = False
        self._current_commit_added = False
        self._current_rollback_added = False
        self._progresses = {}
        self._current_op = OP_ACTION
        self._succeeded_ops = []
        self._failed_ops = []

    # building branches

    def new_branch(self):
        """Start a new branch; later steps and callbacks belong to it."""
        if self._current_op != OP_ACTION:
            raise RuntimeError("should not call NewBranch() in Branch callbacks")
        self._id_gen.new_sub_branch_id()
        self._current_branch = self._id_gen.current_sub_branch_id()
        self._current_action_added = False
        self._current_commit_added = False
        self._current_rollback_added = False
        return self

    def on_rollback(self, compensate):
        """Set ``compensate(barrier)`` to run for this branch on rollback."""
        if self._current_rollback_added:
            raise RuntimeError("one branch can only add one rollback callback")
        self._current_rollback_added = True
        self._failed_ops.append(_Phase2Item(self._current_branch, OP_ROLLBACK, compensate))
        return self

    def on_commit(self, fn):
        """Set ``fn(barrier)`` to run for this branch on commit."""
        if self._current_commit_added:
            raise RuntimeError("one branch can only add one commit callback")
        self._current_commit_added = True
        self._succeeded_ops.append(_Phase2Item(self._current_branch, OP_COMMIT, fn))
        return self

    def on_finish(self, fn):
        """Set ``fn(barrier, is_rollback)`` for both commit and rollback."""
        return self.on_commit(lambda bb: fn(bb, False)).on_rollback(lambda bb: fn(bb, True))

    # recorded steps

    def do(self, fn):
        """Run ``fn(barrier)`` as the branch action and record its result."""

        def run(bb):
            try:
                data = fn(bb)
            except Exception as exc:
                return step_result_from_local(None, exc)
            return step_result_from_local(data, None)

        return self._recorded_do(run).unwrap()

    def do_xa(self, conf, fn):
        """Run ``fn(conn)`` in a local XA branch, committed or rolled back later."""
        branch_id = self._current_branch

        def run(bb):
            if f"{bb.branch_id}-{_OP_BUSINESS}" in self._progresses:
                return StepResult(
                    error=error_message_to_error(
                        "error occur at prepare, not resumable, to rollback.", FailureError
                    )
                )
            result = StepResult()
            self.branch_id_gen.branch_id = branch_id
            self.op = _OP_BUSINESS

            def callback(conn):
                result.data = fn(conn)
                self._save_result(branch_id, _OP_BUSINESS, StepResult(status=STATUS_SUCCEED))

            try:
                xa_handle_local_trans(self, conf, callback)
                error = None
            except Exception as exc:
                error = exc
            result.error = error
            result.status = wf_error_to_status(error)
            return result

        step = self._recorded_do(run)

        def phase2(bb):
            xa_handle_phase2(bb.gid, conf, bb.branch_id, bb.op)

        self._succeeded_ops.append(_Phase2Item(branch_id, OP_COMMIT, phase2))
        self._failed_ops.append(_Phase2Item(branch_id, OP_ROLLBACK, phase2))
        return step.unwrap()

    def request(self, method, url, body=None, headers=None):
        """Send an HTTP request to a branch; in the action its result is recorded.

        Returns the response; raises the dtm error the response stands for.
        """
        params = {
            "gid": self.gid,
            "trans_type": self.trans_type,
            "branch_id": self._current_branch,
            "op": self._current_op,
        }

        def origin(_bb):
            try:
                response = self._http.request(method, url, json=body, params=params, headers=headers)
            except requests.RequestException as exc:
                return step_result_from_http(None, exc)
            return step_result_from_http(response, None, self.options.http_resp_to_dtm_error)

        if self._current_op != OP_ACTION:
            # phase 2 callbacks are recorded by the caller
            step = origin(None)
        else:
            step = self._recorded_do(origin)
        return _step_result_to_http(step)

    # running

    def process(self, handler, data):
        """Run ``handler(workflow, data)`` and finish the workflow at dtm.

        A workflow that already succeeded returns its stored result and
        one that already failed raises FailureError. A FailureError from
        the handler rolls back the branches and is re-raised; any other
        error is raised without finishing, so that dtm retries later.
        """
        reply = self._get_progress()
        transaction = _field(reply, "transaction") or {}
        status = _field(transaction, "status") or ""
        if status == STATUS_SUCCEED:
            return base64.b64decode(_field(transaction, "result") or "")
        if status == STATUS_FAILED:
            raise error_message_to_error(_field(transaction, "rollback_reason") or "", FailureError)
        self._init_progress(_field(reply, "progresses") or [])

        result = None
        error = None
        try:
            result = handler(self, data)
        except FailureError as exc:
            error = exc
        error = self._process_phase2(error)
        self._submit(result, error)
        if error is not None:
            raise error
        return result

    def _init_progress(self, progresses):
        self._progresses = {}
        for progress in progresses:
            status = _field(progress, "status") or ""
            data = _decode_bin(_field(progress, "bin_data"))
            step = StepResult(status=status, data=data)
            if status == STATUS_FAILED:
                step.error = error_message_to_error(_as_text(data), FailureError)
            key = f"{_field(progress, 'branch_id') or ''}-{_field(progress, 'op') or ''}"
            self._progresses[key] = step

    def _process_phase2(self, error):
        if error is None:
            self._current_op = OP_COMMIT
            ops = self._succeeded_ops
        else:
            self._current_op = OP_ROLLBACK
            ops = self._failed_ops
        for item in reversed(ops):
            self._call_phase2(item.branch_id, item.fn)
        return error

    def _call_phase2(self, branch_id, fn):
        self._current_branch = branch_id

        def run(bb):
            try:
                fn(bb)
            except FailureError:
                raise RuntimeError("should not return ErrFail in phase2") from None
            except Exception as exc:
                return step_result_from_local(None, exc)
            return step_result_from_local(None, None)

        self._recorded_do(run).unwrap()

    def _recorded_do(self, fn):
        step = self._recorded_do_inner(fn)
        # a failed branch is not compensated unless asked for
        if not self.options.compensate_error_branch and step.status == STATUS_FAILED:
            if self._failed_ops and self._failed_ops[-1].branch_id == self._current_branch:
                self._failed_ops.pop()
        return step

    def _recorded_do_inner(self, fn):
        branch_id = self._current_branch
        op = self._current_op
        if op == OP_ACTION:
            if self._current_action_added:
                raise RuntimeError("one branch can have only on action")
            self._current_action_added = True
        restored = self._progresses.get(f"{branch_id}-{op}")
        if restored is not None:
            logger.debug(
                "progress restored: '%s' '%s' '%s' '%s' '%s'",
                branch_id, op, restored.error, restored.status, restored.data,
            )
            return restored
        barrier = BranchBarrier(trans_type=self.trans_type, gid=self.gid, branch_id=branch_id, op=op)
        step = fn(barrier)
        try:
            error = self._save_result(branch_id, op, step)
        except Exception as exc:
            error = exc
        if error is not None:
            step = step_result_from_local(None, error)
        return step

    def _save_result(self, branch_id, op, step):
        if step.status:
            self._register_branch(step.data, branch_id, op, step.status)
        return step.error

    # calls to dtm

    def _get_progress(self):
        response = get_http_client(0).request("POST", self.dtm + "/prepareWorkflow", json=self)
        try:
            reply = response.json()
        except ValueError:
            raise DtmError(response.text.strip()) from None
        return reply if isinstance(reply, dict) else {}

    def _submit(self, result, error):
        extra = {
            "status": wf_error_to_status(error),
            "rollback_reason": "" if error is None else str(error),
            "result": base64.b64encode(bytes(result or b"")).decode("ascii"),
        }
        body = {"gid": self.gid, "trans_type": self.trans_type, "req_extra": extra}
        trans_call_dtm_ext(self, body, "submit")

    def _register_branch(self, data, branch_id, op, status):
        trans_register_branch(
            self,
            {"data": _as_text(data), "branch_id": branch_id, "op": op, "status": status},
            "registerBranch",
        )