"""Saga transactions: actions with compensations run by the dtm server."""

from .trans_base import TransBase, trans_call_dtm
from .utils import must_marshal_string


class Saga(TransBase):
    """A saga transaction built step by step and submitted to dtm."""

    def __init__(self, server, gid):
        super().__init__(gid=gid, trans_type="saga", dtm=server)
        self.orders = {}

    def add(self, action, compensate, post_data):
        """Add a step with its action and compensation URLs."""
        self.steps.append({"action": action, "compensate": compensate})
        self.payloads.append(must_marshal_string(post_data))
        return self

    def add_branch_order(self, branch, pre_branches):
        """Run step ``branch`` only after all ``pre_branches`` have finished."""
        self.orders[branch] = list(pre_branches)
        return self

    def set_concurrent(self):
        """Let dtm run the steps concurrently."""
        self.concurrent = True
        return self

    def build_custom_options(self):
        if self.concurrent:
            orders = {str(k): self.orders[k] for k in sorted(self.orders, key=str)}
            self.custom_data = must_marshal_string({"concurrent": self.concurrent, "orders": orders})

    def submit(self):
        """Submit the saga to the dtm server."""
        self.build_custom_options()
        trans_call_dtm(self, "submit")