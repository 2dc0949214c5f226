"""Database connections and the XA protocol shared by the xa clients."""

import contextlib
import logging
import threading

import pymysql

from .consts import OP_ACTION, OP_ROLLBACK, XA_BARRIER1
from .db_special import get_db_special
from .utils import db_exec, get_dsn, insert_barrier, may_replace_localhost

logger = logging.getLogger("dtmcli")

_pool = {}
_pool_lock = threading.Lock()


def _connect_mysql(conf, xa):
    return pymysql.connect(
        host=may_replace_localhost(conf.host),
        port=int(conf.port),
        user=conf.user,
        password=conf.password,
        database=conf.db,
        charset="utf8mb4",
        autocommit=not xa,
    )


_connectors = {"mysql": _connect_mysql}


def register_connector(driver, connect):
    """Use ``connect(conf, xa)`` to open connections for ``driver``.

    ``xa`` is true for connections that run an XA branch. Returns the
    connector that was registered before, if any.
    """
    previous = _connectors.get(driver)
    _connectors[driver] = connect
    return previous


def _open(conf, xa, label):
    dsn = get_dsn(conf)
    connect = _connectors.get(conf.driver)
    if connect is None:
        raise ValueError(f"no connector registered for driver '{conf.driver}'")
    shown = dsn.replace(conf.password, "****", 1) if conf.password else dsn
    logger.info("opening %s %s: %s", label, conf.driver, shown)
    return connect(conf, xa)


def pooled_db(conf):
    """Return the shared connection for ``conf``, opening it on first use."""
    dsn = get_dsn(conf)
    with _pool_lock:
        conn = _pool.get(dsn)
        if conn is None:
            conn = _open(conf, False, "standalone")
            _pool[dsn] = conn
        return conn


def xa_db(conf):
    """Open a new connection for an XA branch."""
    return _open(conf, True, "xa standalone")


def xa_handle_phase2(gid, conf, branch_id, op):
    """Commit or roll back a prepared XA branch."""
    conn = pooled_db(conf)
    xa_id = f"{gid}-{branch_id}"
    try:
        db_exec(conf.driver, conn, get_db_special(conf.driver).xa_sql(op, xa_id))
    except Exception as exc:
        # a repeated commit/rollback reports an unknown xid; that is fine
        message = str(exc)
        if "XAER_NOTA" not in message and "does not exist" not in message:
            raise
    if op == OP_ROLLBACK:
        # prepare and rollback both insert this row, so a rolled back
        # branch cannot be prepared later
        insert_barrier(conn, "xa", gid, branch_id, OP_ACTION, XA_BARRIER1, op, conf.driver, "")


def xa_handle_local_trans(tb, conf, callback):
    """Run ``callback(conn)`` inside an XA branch and prepare it on success."""
    dialect = get_db_special(conf.driver)
    branch_id = tb.branch_id_gen.branch_id
    xa_branch = f"{tb.gid}-{branch_id}"
    conn = xa_db(conf)
    try:
        try:
            db_exec(conf.driver, conn, dialect.xa_sql("start", xa_branch))
            try:
                insert_barrier(conn, tb.trans_type, tb.gid, branch_id, OP_ACTION, XA_BARRIER1, OP_ACTION, conf.driver, "")
                callback(conn)
            finally:
                with contextlib.suppress(Exception):
                    db_exec(conf.driver, conn, dialect.xa_sql("end", xa_branch))
        except BaseException:
            with contextlib.suppress(Exception):
                db_exec(conf.driver, conn, dialect.xa_sql("abort", xa_branch))
            raise
        db_exec(conf.driver, conn, dialect.xa_sql("prepare", xa_branch))
    finally:
        logger.info("closing xa db")
        with contextlib.suppress(Exception):
            conn.close()


def xa_handle_global_trans(tb, call_dtm, call_busi):
    """Prepare a global XA transaction, run the business and submit or abort."""
    call_dtm("prepare")
    try:
        call_busi()
    except BaseException:
        with contextlib.suppress(Exception):
            call_dtm("abort")
        raise
    call_dtm("submit")