"""Sub-transaction barriers that make branch handlers idempotent.

A barrier records every operation of a branch before running it, so that
repeated requests, compensations without a try (null compensation) and
tries arriving after their compensation (dangling requests) are skipped.
"""

import contextlib
import dataclasses
import logging

from .consts import (
    MSG_DO_BARRIER1,
    MSG_DO_BRANCH0,
    MSG_DO_OP,
    OP_ACTION,
    OP_CANCEL,
    OP_COMPENSATE,
    OP_ROLLBACK,
    OP_TRY,
    RESULT_FAILURE,
    DuplicatedError,
    FailureError,
)
from .db_special import get_db_special
from .utils import _driver_sql, escape_get, get_barrier_table_name, insert_barrier

logger = logging.getLogger("dtmcli")

# the operation a compensating operation undoes
_SQL_ORIGIN_OPS = {
    OP_CANCEL: OP_TRY,  # tcc
    OP_COMPENSATE: OP_ACTION,  # saga
    OP_ROLLBACK: OP_ACTION,  # workflow
}
_NOSQL_ORIGIN_OPS = {
    OP_CANCEL: OP_TRY,
    OP_COMPENSATE: OP_ACTION,
}

_REDIS_CHECK_ADJUST_AMOUNT = """ -- RedisCheckAdjustAmount
local v = redis.call('GET', KEYS[1])
local e1 = redis.call('GET', KEYS[2])

if v == false or v + ARGV[1] < 0 then
    return 'FAILURE'
end

if e1 ~= false then
    return 'DUPLICATE'
end

redis.call('SET', KEYS[2], 'op', 'EX', ARGV[3])

if ARGV[2] ~= '' then
    local e2 = redis.call('GET', KEYS[3])
    if e2 == false then
        redis.call('SET', KEYS[3], 'rollback', 'EX', ARGV[3])
        return
    end
end
redis.call('INCRBY', KEYS[1], ARGV[1])
"""

_REDIS_QUERY_PREPARED = """ -- RedisQueryPrepared
local v = redis.call('GET', KEYS[1])
if v == false then
    redis.call('SET', KEYS[1], 'rollback', 'EX', ARGV[1])
    v = 'rollback'
end
if v == 'rollback' then
    return 'FAILURE'
end
"""


def _as_text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


@dataclasses.dataclass
class BranchBarrier:
    """The identity of one branch operation, guarded by barrier records."""

    trans_type: str
    gid: str
    branch_id: str
    op: str
    barrier_id: int = 0
    db_type: str = ""  # mysql or postgres; empty means the current type
    barrier_table_name: str = ""

    def __str__(self):
        return f"transInfo: {self.trans_type} {self.gid} {self.branch_id} {self.op}"

    def _new_barrier_id(self):
        self.barrier_id += 1
        return f"{self.barrier_id:02d}"

    def _run_guarded(self, origin_ops, insert, run_busi):
        origin_op = origin_ops.get(self.op, "")
        origin_error = None
        try:
            origin_affected = insert(origin_op)
        except Exception as exc:
            origin_affected, origin_error = 0, exc
        current_affected = insert(self.op)
        logger.debug("originAffected: %d currentAffected: %d", origin_affected, current_affected)

        if self.op == MSG_DO_OP and current_affected == 0:
            # a repeated DoAndSubmit of a msg must be rejected
            raise DuplicatedError()
        if origin_error is not None:
            raise origin_error
        null_compensate = self.op in origin_ops and origin_affected > 0
        if null_compensate or current_affected == 0:  # repeated or dangling request
            return
        run_busi()

    def call(self, conn, busi_call):
        """Run ``busi_call(conn)`` guarded by the barrier, in one transaction.

        The transaction is committed when everything succeeds and rolled
        back when the barrier or ``busi_call`` raises.
        """
        bid = self._new_barrier_id()
        begin = getattr(conn, "begin", None)
        if callable(begin):
            begin()

        def insert(op):
            return insert_barrier(
                conn, self.trans_type, self.gid, self.branch_id, op, bid, self.op,
                self.db_type, self.barrier_table_name,
            )

        try:
            self._run_guarded(_SQL_ORIGIN_OPS, insert, lambda: busi_call(conn))
        except BaseException:
            with contextlib.suppress(Exception):
                conn.rollback()
            raise
        conn.commit()

    def query_prepared(self, conn):
        """Answer dtm's query for a msg; raise FailureError if it must roll back."""
        insert_barrier(
            conn, self.trans_type, self.gid, MSG_DO_BRANCH0, MSG_DO_OP, MSG_DO_BARRIER1,
            OP_ROLLBACK, self.db_type, self.barrier_table_name,
        )
        commit = getattr(conn, "commit", None)
        if callable(commit):
            commit()
        sql = (
            f"select reason from {get_barrier_table_name()} "
            "where gid=? and branch_id=? and op=? and barrier_id=?"
        )
        sql = get_db_special(self.db_type).placeholder_sql(sql)
        args = (self.gid, MSG_DO_BRANCH0, MSG_DO_OP, MSG_DO_BARRIER1)
        logger.debug("queryrow: %s %s", sql, args)
        cursor = conn.cursor()
        try:
            cursor.execute(_driver_sql(conn, sql), args)
            row = cursor.fetchone()
        finally:
            cursor.close()
        if row is None:
            raise LookupError("sql: no rows in result set")
        if row[0] == OP_ROLLBACK:
            raise FailureError()

    def redis_check_adjust_amount(self, client, key, amount, barrier_expire):
        """Add ``amount`` to ``key`` once, refusing to go below zero."""
        bid = self._new_barrier_id()
        origin_op = _NOSQL_ORIGIN_OPS.get(self.op, "")
        current_key = f"{self.gid}-{self.branch_id}-{self.op}-{bid}"
        origin_key = f"{self.gid}-{self.branch_id}-{origin_op}-{bid}"
        result = _as_text(client.eval(
            _REDIS_CHECK_ADJUST_AMOUNT, 3, key, current_key, origin_key,
            amount, origin_op, barrier_expire,
        ))
        logger.debug("lua return v: %s", result)
        if self.op == MSG_DO_OP and result == "DUPLICATE":
            raise DuplicatedError()
        if result == RESULT_FAILURE:
            raise FailureError()

    def redis_query_prepared(self, client, barrier_expire):
        """Answer dtm's query for a msg stored in redis."""
        key = f"{self.gid}-{MSG_DO_BRANCH0}-{MSG_DO_OP}-{MSG_DO_BARRIER1}"
        result = _as_text(client.eval(_REDIS_QUERY_PREPARED, 1, key, barrier_expire))
        logger.debug("lua return v: %s", result)
        if result == RESULT_FAILURE:
            raise FailureError()

    def mongo_call(self, client, busi_call):
        """Run ``busi_call(session)`` guarded by the barrier in a mongo transaction."""
        bid = self._new_barrier_id()
        with client.start_session() as session:
            try:
                session.start_transaction()
            except Exception:
                return

            def insert(op):
                return _mongo_insert_barrier(
                    client, session, self.trans_type, self.gid, self.branch_id, op, bid, self.op
                )

            try:
                self._run_guarded(_NOSQL_ORIGIN_OPS, insert, lambda: busi_call(session))
            except BaseException:
                with contextlib.suppress(Exception):
                    session.abort_transaction()
                raise
            session.commit_transaction()

    def mongo_query_prepared(self, client):
        """Answer dtm's query for a msg stored in mongo."""
        _mongo_insert_barrier(
            client, None, self.trans_type, self.gid, MSG_DO_BRANCH0, MSG_DO_OP,
            MSG_DO_BARRIER1, OP_ROLLBACK,
        )
        document = _barrier_collection(client).find_one({
            "gid": self.gid,
            "branch_id": MSG_DO_BRANCH0,
            "op": MSG_DO_OP,
            "barrier_id": MSG_DO_BARRIER1,
        })
        if document is None:
            raise LookupError("mongo: no documents in result")
        if document.get("reason") == OP_ROLLBACK:
            raise FailureError()


def _barrier_collection(client):
    database, collection = get_barrier_table_name().split(".", 1)
    return client[database][collection]


def _mongo_insert_barrier(client, session, trans_type, gid, branch_id, op, barrier_id, reason):
    if not op:
        return 0
    barrier = _barrier_collection(client)
    key = {"gid": gid, "branch_id": branch_id, "op": op, "barrier_id": barrier_id}
    if barrier.find_one(key, session=session) is not None:
        return 0
    barrier.insert_one({"trans_type": trans_type, **key, "reason": reason}, session=session)
    return 1


def barrier_from(trans_type, gid, branch_id, op):
    """Build a barrier, raising ValueError if any field is empty."""
    barrier = BranchBarrier(trans_type=trans_type, gid=gid, branch_id=branch_id, op=op)
    if not (trans_type and gid and branch_id and op):
        raise ValueError(f"invalid trans info: {barrier}")
    return barrier


def barrier_from_query(query):
    """Build a barrier from the query of a branch request."""
    return barrier_from(
        escape_get(query, "trans_type"),
        escape_get(query, "gid"),
        escape_get(query, "branch_id"),
        escape_get(query, "op"),
    )