import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from dtmcli.consts import (
    MAP_SUCCESS,
    OP_ACTION,
    OP_COMMIT,
    OP_ROLLBACK,
    STATUS_FAILED,
    STATUS_PREPARED,
    STATUS_SUCCEED,
    FailureError,
)
from dtmcli.utils import DBConf
from dtmcli.workflow.core import Options, Workflow
from dtmcli.xa_base import register_connector

DTM = "http://dtm.example/api/dtmsvr"
BUSI = "http://busi.example/api/busi"


def b64(data):
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        mock.post(DTM + "/registerBranch", json=MAP_SUCCESS)
        mock.post(DTM + "/submit", json=MAP_SUCCESS)
        yield mock


def prepare(mock, status=STATUS_PREPARED, progresses=(), **transaction):
    mock.post(
        DTM + "/prepareWorkflow",
        json={"Transaction": {"Status": status, **transaction}, "Progresses": list(progresses)},
    )


def bodies(mock, suffix):
    return [
        json.loads(call.request.body)
        for call in mock.calls
        if urlsplit(call.request.url).path.endswith(suffix)
    ]


def new_wf(gid="gid1"):
    return Workflow("wf", gid, b"data", DTM, BUSI + "/callback")


class FakeCursor:
    def __init__(self, log):
        self.log = log
        self.rowcount = 0

    def execute(self, sql, args):
        self.log.append(sql)
        self.rowcount = 1

    def close(self):
        pass


class FakeConnection:
    def __init__(self, log):
        self.log = log

    def cursor(self):
        return FakeCursor(self.log)

    def close(self):
        pass


@pytest.fixture
def executed():
    log = []
    previous = register_connector("postgres", lambda conf, xa: FakeConnection(log))
    try:
        yield log
    finally:
        register_connector("postgres", previous)


def test_custom_data_holds_name_and_data():
    wf = new_wf()
    custom = json.loads(wf.custom_data)
    assert custom["name"] == "wf"
    assert base64.b64decode(custom["data"]) == b"data"
    assert wf.trans_type == "workflow"
    assert wf.options == Options()


def test_succeeded_workflow_returns_stored_result(rsps):
    prepare(rsps, STATUS_SUCCEED, Result=b64(b"done"))

    def handler(wf, data):
        raise AssertionError("handler must not run")

    wf = new_wf()
    assert wf.process(handler, b"") == b"done"
    assert bodies(rsps, "/submit") == []
    assert bodies(rsps, "/prepareWorkflow")[0]["custom_data"] == wf.custom_data


def test_failed_workflow_raises_failure(rsps):
    prepare(rsps, STATUS_FAILED, RollbackReason="no balance")
    with pytest.raises(FailureError) as info:
        new_wf().process(lambda wf, data: b"", b"")
    assert str(info.value).startswith("no balance")


def test_do_steps_are_registered_and_submitted(rsps):
    prepare(rsps)
    barriers = []

    def step(result):
        def run(bb):
            barriers.append(bb)
            return result
        return run

    def handler(wf, data):
        first = wf.new_branch().do(step(b"one"))
        second = wf.new_branch().do(step(b"two"))
        return first + second

    assert new_wf().process(handler, b"") == b"onetwo"
    registered = [(r["branch_id"], r["op"], r["status"], r["data"]) for r in bodies(rsps, "/registerBranch")]
    assert registered == [("01", OP_ACTION, STATUS_SUCCEED, "one"), ("02", OP_ACTION, STATUS_SUCCEED, "two")]
    assert [(bb.gid, bb.branch_id, bb.op) for bb in barriers] == [("gid1", "01", OP_ACTION), ("gid1", "02", OP_ACTION)]
    submit = bodies(rsps, "/submit")[0]
    assert submit["gid"] == "gid1"
    assert submit["req_extra"]["status"] == STATUS_SUCCEED
    assert base64.b64decode(submit["req_extra"]["result"]) == b"onetwo"


def test_failure_rolls_back_in_reverse_order(rsps):
    prepare(rsps)
    calls = []

    def record(bb):
        calls.append((bb.branch_id, bb.op))

    def handler(wf, data):
        wf.new_branch().on_rollback(record).on_commit(lambda bb: calls.append("commit")).do(lambda bb: b"x")
        wf.new_branch().on_rollback(record)
        raise FailureError("stop")

    with pytest.raises(FailureError):
        new_wf().process(handler, b"")
    assert calls == [("02", OP_ROLLBACK), ("01", OP_ROLLBACK)]
    extra = bodies(rsps, "/submit")[0]["req_extra"]
    assert extra["status"] == STATUS_FAILED
    assert extra["rollback_reason"] == "stop"


def test_commit_in_reverse_order(rsps):
    prepare(rsps)
    calls = []

    def record(bb):
        calls.append((bb.branch_id, bb.op))

    def handler(wf, data):
        wf.new_branch().on_commit(record).on_rollback(lambda bb: calls.append("rollback"))
        wf.new_branch().on_commit(record)
        return b"committed"

    assert new_wf().process(handler, b"") == b"committed"
    assert calls == [("02", OP_COMMIT), ("01", OP_COMMIT)]
    ops = [(r["branch_id"], r["op"]) for r in bodies(rsps, "/registerBranch")]
    assert ops == [("02", OP_COMMIT), ("01", OP_COMMIT)]


def test_on_finish_reports_commit(rsps):
    prepare(rsps)
    calls = []

    def handler(wf, data):
        wf.new_branch().on_finish(lambda bb, is_rollback: calls.append(is_rollback))
        return b"finished"

    assert new_wf().process(handler, b"") == b"finished"
    assert calls == [False]


def _fail(bb):
    raise FailureError("busi")


def test_failed_branch_not_compensated_by_default(rsps):
    prepare(rsps)
    calls = []

    def handler(wf, data):
        wf.new_branch().on_rollback(lambda bb: calls.append(bb.branch_id)).do(_fail)

    with pytest.raises(FailureError):
        new_wf().process(handler, b"")
    assert calls == []
    assert [r["status"] for r in bodies(rsps, "/registerBranch")] == [STATUS_FAILED]


def test_failed_branch_compensated_when_asked(rsps):
    prepare(rsps)
    calls = []

    def handler(wf, data):
        wf.new_branch().on_rollback(lambda bb: calls.append((bb.branch_id, bb.op))).do(_fail)

    wf = new_wf()
    wf.options.compensate_error_branch = True
    with pytest.raises(FailureError):
        wf.process(handler, b"")
    assert calls == [("01", OP_ROLLBACK)]


def test_other_error_propagates_without_submit(rsps):
    prepare(rsps)

    def boom(bb):
        raise ValueError("boom")

    def handler(wf, data):
        wf.new_branch().do(boom)

    with pytest.raises(ValueError, match="boom"):
        new_wf().process(handler, b"")
    assert bodies(rsps, "/submit") == []
    assert bodies(rsps, "/registerBranch") == []


def test_progress_is_restored(rsps):
    prepare(rsps, progresses=[{"BranchID": "01", "Op": OP_ACTION, "Status": STATUS_SUCCEED, "BinData": b64(b"cached")}])
    calls = []

    def handler(wf, data):
        return wf.new_branch().do(lambda bb: calls.append(bb) or b"fresh")

    assert new_wf().process(handler, b"") == b"cached"
    assert calls == []
    assert bodies(rsps, "/registerBranch") == []


def test_failed_progress_is_restored(rsps):
    prepare(rsps, progresses=[{"BranchID": "01", "Op": OP_ACTION, "Status": STATUS_FAILED, "BinData": b64(b"no balance")}])
    calls = []

    def handler(wf, data):
        wf.new_branch().do(lambda bb: calls.append(bb) or b"fresh")

    with pytest.raises(FailureError) as info:
        new_wf().process(handler, b"")
    assert str(info.value).startswith("no balance")
    assert calls == []


def test_new_branch_in_callback_raises(rsps):
    prepare(rsps)

    def handler(wf, data):
        wf.new_branch().on_commit(lambda bb: wf.new_branch())

    with pytest.raises(RuntimeError):
        new_wf().process(handler, b"")
    assert bodies(rsps, "/submit") == []


def test_failure_in_phase2_is_refused(rsps):
    prepare(rsps)

    def handler(wf, data):
        wf.new_branch().on_commit(_fail)

    with pytest.raises(RuntimeError):
        new_wf().process(handler, b"")


def test_two_actions_in_one_branch_raise(rsps):
    wf = new_wf()
    wf.new_branch()
    assert wf.do(lambda bb: b"a") == b"a"
    with pytest.raises(RuntimeError):
        wf.do(lambda bb: b"b")


def test_callbacks_added_twice_raise():
    wf = new_wf().new_branch()
    wf.on_rollback(lambda bb: None)
    with pytest.raises(RuntimeError):
        wf.on_rollback(lambda bb: None)
    wf.on_commit(lambda bb: None)
    with pytest.raises(RuntimeError):
        wf.on_commit(lambda bb: None)


def test_request_is_recorded(rsps):
    prepare(rsps)
    rsps.post(BUSI + "/TransIn", json=MAP_SUCCESS)

    def handler(wf, data):
        return wf.new_branch().request("POST", BUSI + "/TransIn", {"amount": 30}).content

    result = new_wf().process(handler, b"")
    assert json.loads(result) == MAP_SUCCESS
    busi_call = next(c for c in rsps.calls if c.request.url.startswith(BUSI))
    query = parse_qs(urlsplit(busi_call.request.url).query)
    assert query["gid"] == ["gid1"]
    assert query["branch_id"] == ["01"]
    assert query["op"] == [OP_ACTION]
    assert json.loads(busi_call.request.body) == {"amount": 30}
    registered = bodies(rsps, "/registerBranch")
    assert json.loads(registered[0]["data"]) == MAP_SUCCESS


def test_request_conflict_raises_failure(rsps):
    prepare(rsps)
    rsps.post(BUSI + "/TransIn", status=409, body="no money")

    def handler(wf, data):
        wf.new_branch().request("POST", BUSI + "/TransIn", {"amount": 30})

    with pytest.raises(FailureError):
        new_wf().process(handler, b"")
    registered = bodies(rsps, "/registerBranch")
    assert [(r["status"], r["data"]) for r in registered] == [(STATUS_FAILED, "no money")]
    assert bodies(rsps, "/submit")[0]["req_extra"]["status"] == STATUS_FAILED


def test_request_in_phase2_uses_phase2_op(rsps):
    prepare(rsps)
    rsps.post(BUSI + "/Confirm", json=MAP_SUCCESS)
    replies = []

    def handler(wf, data):
        wf.new_branch().on_commit(lambda bb: replies.append(wf.request("POST", BUSI + "/Confirm").json()))
        return b"confirmed"

    assert new_wf().process(handler, b"") == b"confirmed"
    assert replies == [MAP_SUCCESS]
    busi_call = next(c for c in rsps.calls if c.request.url.startswith(BUSI))
    assert parse_qs(urlsplit(busi_call.request.url).query)["op"] == [OP_COMMIT]
    assert [r["op"] for r in bodies(rsps, "/registerBranch")] == [OP_COMMIT]


def test_do_xa_prepares_and_commits(rsps, executed):
    prepare(rsps)
    conf = DBConf(driver="postgres", host="localhost", port=5432, user="user", db="db_xa_commit")

    def handler(wf, data):
        return wf.new_branch().do_xa(conf, lambda conn: b"xa")

    assert new_wf("gidxa").process(handler, b"") == b"xa"
    assert "begin" in executed
    assert "prepare transaction 'gidxa-01'" in executed
    assert "commit prepared 'gidxa-01'" in executed
    assert executed.index("prepare transaction 'gidxa-01'") < executed.index("commit prepared 'gidxa-01'")
    assert [r["op"] for r in bodies(rsps, "/registerBranch")] == ["business", OP_ACTION, OP_COMMIT]


def test_do_xa_not_resumable_after_prepare(rsps, executed):
    prepare(rsps, progresses=[{"BranchID": "01", "Op": "business", "Status": STATUS_SUCCEED, "BinData": ""}])
    conf = DBConf(driver="postgres", host="localhost", port=5432, user="user", db="db_xa_resume")
    calls = []

    def handler(wf, data):
        wf.new_branch().do_xa(conf, lambda conn: calls.append(conn))

    with pytest.raises(FailureError):
        new_wf("gidre").process(handler, b"")
    assert calls == []
    assert "begin" not in executed
    assert "rollback prepared 'gidre-01'" in executed
    assert bodies(rsps, "/submit")[0]["req_extra"]["status"] == STATUS_FAILED