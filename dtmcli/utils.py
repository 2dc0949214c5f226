"""Helpers shared by the transaction clients: JSON, DSNs and barrier inserts."""

import base64
import dataclasses
import json
import logging
import os
import re
import time
from urllib.parse import parse_qs

from pymysql.connections import Connection as _MysqlConnection
from pymysql.cursors import Cursor as _MysqlCursor

from .db_special import get_current_db_type, get_db_special

logger = logging.getLogger("dtmcli")

_barrier_table_name = "dtm_barrier.barrier"

_INT_RE = re.compile(r"[+-]?[0-9]+")

# characters escaped in JSON output so it is safe inside HTML
_JSON_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


@dataclasses.dataclass
class DBConf:
    """Connection settings of a business database."""

    driver: str = ""
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    db: str = ""
    schema: str = ""


def or_string(*args):
    """Return the first non-empty string, or an empty one."""
    return next((s for s in args if s), "")


def must_atoi(text):
    """Convert a decimal string to an int, raising ValueError otherwise."""
    if not _INT_RE.fullmatch(text):
        raise ValueError("convert to int error: " + text)
    return int(text)


def _json_default(value):
    to_json = getattr(value, "to_json", None)
    if callable(to_json):
        return to_json()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def must_marshal(value):
    """Serialize ``value`` to compact JSON bytes."""
    text = json.dumps(
        value,
        default=_json_default,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    for char, replacement in _JSON_HTML_ESCAPES.items():
        text = text.replace(char, replacement)
    return text.encode("utf-8")


def must_marshal_string(value):
    """Serialize ``value`` to a compact JSON string."""
    return must_marshal(value).decode("utf-8")


def as_error(value):
    """Return ``value`` as an exception, wrapping anything that is not one."""
    logger.error("panic wrapped to error: '%s'", value)
    if isinstance(value, BaseException):
        return value
    return Exception(str(value))


def may_replace_localhost(host):
    """Inside docker (IS_DOCKER set), point localhost at the docker host."""
    if os.environ.get("IS_DOCKER"):
        return host.replace("localhost", "host.docker.internal", 1).replace(
            "127.0.0.1", "host.docker.internal", 1
        )
    return host


def escape(value):
    """Strip line breaks and semicolons from a request value."""
    return value.replace("\n", "").replace("\r", "").replace(";", "")


def escape_get(query, key):
    """Return the first value of ``key`` in a query, escaped."""
    if isinstance(query, str):
        query = parse_qs(query, keep_blank_values=True)
    value = query.get(key, "")
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return escape(value)


def get_dsn(conf):
    """Build the data source name of ``conf``."""
    host = may_replace_localhost(conf.host)
    port = int(conf.port)
    if conf.driver == "mysql":
        return (
            f"{conf.user}:{conf.password}@tcp({host}:{port})/{conf.db}"
            "?charset=utf8mb4&parseTime=true&loc=Local&interpolateParams=true"
        )
    if conf.driver == "postgres":
        return (
            f"host={host} user={conf.user} password={conf.password} dbname='{conf.db}' "
            f"search_path={conf.schema} port={port} sslmode=disable"
        )
    raise ValueError(f"unknow driver: {conf.driver}")


def set_barrier_table_name(name):
    global _barrier_table_name
    _barrier_table_name = name


def get_barrier_table_name():
    return _barrier_table_name


def _driver_sql(conn, sql):
    # pymysql takes %s placeholders instead of ?
    if isinstance(conn, (_MysqlConnection, _MysqlCursor)):
        return sql.replace("%", "%%").replace("?", "%s")
    return sql


def _execute(conn, sql, args):
    cursor_factory = getattr(conn, "cursor", None)
    if callable(cursor_factory):
        cursor = cursor_factory()
        try:
            cursor.execute(sql, args)
            return cursor.rowcount
        finally:
            cursor.close()
    conn.execute(sql, args)
    return conn.rowcount


def db_exec(db_type, conn, sql, *args):
    """Execute ``sql`` on a connection or cursor and return the affected rows."""
    if not sql:
        return 0
    sql = get_db_special(db_type).placeholder_sql(sql)
    began = time.monotonic()
    try:
        affected = _execute(conn, _driver_sql(conn, sql), tuple(args))
    except Exception as exc:
        used = int((time.monotonic() - began) * 1000)
        logger.error("used: %d ms exec error: %s for %s %s", used, exc, sql, args)
        raise
    used = int((time.monotonic() - began) * 1000)
    logger.debug("used: %d ms affected: %d for %s %s", used, affected, sql, args)
    return affected


def insert_barrier(conn, trans_type, gid, branch_id, op, barrier_id, reason, db_type="", table_name=""):
    """Insert a barrier row, ignoring duplicates; return the rows inserted."""
    if not op:
        return 0
    if not db_type:
        db_type = get_current_db_type()
    if not table_name:
        table_name = _barrier_table_name
    sql = get_db_special(db_type).insert_ignore_template(
        table_name + "(trans_type, gid, branch_id, op, barrier_id, reason) values(?,?,?,?,?,?)",
        "uniq_barrier",
    )
    return db_exec(db_type, conn, sql, trans_type, gid, branch_id, op, barrier_id, reason)