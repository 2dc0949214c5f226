"""Reliable messages: branches dtm calls once the local work has committed."""

import contextlib

from .barrier import barrier_from
from .consts import MSG_DO_BRANCH0, MSG_DO_OP, MSG_TOPIC_PREFIX, FailureError
from .trans_base import TransBase, request_branch, trans_call_dtm
from .utils import must_marshal_string, or_string


class Msg(TransBase):
    """A reliable message transaction."""

    def __init__(self, server, gid):
        super().__init__(gid=gid, trans_type="msg", dtm=server)
        self.delay = 0  # seconds before the branches are called

    def add(self, action, post_data):
        """Add a branch that dtm calls with ``post_data``."""
        self.steps.append({"action": action})
        self.payloads.append(must_marshal_string(post_data))
        return self

    def add_topic(self, topic, post_data):
        """Add a branch for every subscriber of ``topic``."""
        return self.add(f"{MSG_TOPIC_PREFIX}{topic}", post_data)

    def set_delay(self, delay):
        self.delay = delay
        return self

    def prepare(self, query_prepared):
        """Register the msg as prepared; it is submitted later."""
        self.query_prepared = or_string(query_prepared, self.query_prepared)
        trans_call_dtm(self, "prepare")

    def submit(self):
        """Submit the msg to dtm."""
        self.build_custom_options()
        trans_call_dtm(self, "submit")

    def do_and_submit(self, query_prepared, busi_call):
        """Prepare, run ``busi_call(barrier)`` and then submit or abort.

        An error from ``busi_call`` is re-raised. A FailureError aborts the
        msg directly; any other error makes dtm's prepared query decide.
        """
        bb = barrier_from(self.trans_type, self.gid, MSG_DO_BRANCH0, MSG_DO_OP)
        self.prepare(query_prepared)
        try:
            busi_call(bb)
        except FailureError:
            with contextlib.suppress(Exception):
                trans_call_dtm(self, "abort")
            raise
        except Exception:
            try:
                request_branch(self, "GET", None, bb.branch_id, bb.op, query_prepared)
            except FailureError:
                with contextlib.suppress(Exception):
                    trans_call_dtm(self, "abort")
            except Exception:
                pass
            else:
                with contextlib.suppress(Exception):
                    self.submit()
            raise
        self.submit()

    def do_and_submit_db(self, query_prepared, conn, busi_call):
        """Like do_and_submit, running ``busi_call(conn)`` behind a barrier on ``conn``."""
        self.do_and_submit(query_prepared, lambda bb: bb.call(conn, busi_call))

    def build_custom_options(self):
        if self.delay > 0:
            self.custom_data = must_marshal_string({"delay": self.delay})