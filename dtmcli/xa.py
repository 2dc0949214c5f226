"""XA transactions: branches prepared in their databases, committed by dtm."""

import dataclasses

from .consts import OP_ACTION, OP_COMMIT, OP_ROLLBACK
from .trans_base import (
    TransBase,
    request_branch,
    trans_base_from_query,
    trans_call_dtm,
    trans_register_branch,
)
from .utils import escape_get
from .xa_base import xa_handle_global_trans, xa_handle_local_trans, xa_handle_phase2


@dataclasses.dataclass(kw_only=True)
class Xa(TransBase):
    """An xa global transaction, or the view of one inside a branch handler."""

    phase2_url: str = ""

    def call_branch(self, body, url):
        """Call an xa branch at ``url`` and return its response."""
        branch_id = self.branch_id_gen.new_sub_branch_id()
        return request_branch(self, "POST", body, branch_id, OP_ACTION, url)


def xa_from_query(query):
    """Build an Xa from the query of a branch request."""
    base = trans_base_from_query(query)
    xa = Xa(
        gid=base.gid,
        trans_type=base.trans_type,
        dtm=base.dtm,
        branch_id_gen=base.branch_id_gen,
        op=escape_get(query, "op"),
        phase2_url=escape_get(query, "phase2_url"),
    )
    branch_id = xa.branch_id_gen.branch_id
    if not xa.gid or not branch_id or not xa.op:
        raise ValueError(
            f"bad xa info: gid: {xa.gid} branchid: {branch_id} op: {xa.op} phase2_url: {xa.phase2_url}"
        )
    return xa


def xa_local_transaction(query, conf, xa_func):
    """Handle an xa branch request.

    Commit and rollback requests finish the prepared branch. Any other
    request runs ``xa_func(conn, xa)`` inside a new XA branch and registers
    the branch with dtm before preparing it.
    """
    xa = xa_from_query(query)
    branch_id = xa.branch_id_gen.branch_id
    if xa.op in (OP_COMMIT, OP_ROLLBACK):
        xa_handle_phase2(xa.gid, conf, branch_id, xa.op)
        return

    def run(conn):
        xa_func(conn, xa)
        trans_register_branch(xa, {"url": xa.phase2_url, "branch_id": branch_id}, "registerBranch")

    xa_handle_local_trans(xa, conf, run)


def xa_global_transaction(server, gid, xa_func, custom=None):
    """Run ``xa_func(xa)`` as an xa global transaction.

    The transaction is submitted when ``xa_func`` returns and aborted when
    it raises; the error is re-raised. ``custom(xa)`` may adjust the
    transaction before it is prepared.
    """
    xa = Xa(gid=gid, trans_type="xa", dtm=server)
    if custom is not None:
        custom(xa)
    xa_handle_global_trans(
        xa,
        lambda action: trans_call_dtm(xa, action),
        lambda: xa_func(xa),
    )