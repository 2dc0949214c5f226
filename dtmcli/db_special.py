"""SQL dialect differences between the supported databases."""

import abc
import itertools
import re

from .consts import DB_TYPE_MYSQL, DB_TYPE_POSTGRES


class DBSpecial(abc.ABC):
    """Database specific SQL generation."""

    @abc.abstractmethod
    def placeholder_sql(self, sql):
        """Rewrite ``?`` placeholders into the dialect's form."""

    @abc.abstractmethod
    def insert_ignore_template(self, table_and_values, pg_constraint):
        """Return an insert statement that ignores duplicate rows."""

    @abc.abstractmethod
    def xa_sql(self, command, xid):
        """Return the SQL for an XA command on transaction ``xid``."""


class MysqlDBSpecial(DBSpecial):
    def placeholder_sql(self, sql):
        return sql

    def xa_sql(self, command, xid):
        if command == "abort":
            command = "rollback"
        return f"xa {command} '{xid}'"

    def insert_ignore_template(self, table_and_values, pg_constraint):
        return f"insert ignore into {table_and_values}"


class PostgresDBSpecial(DBSpecial):
    def xa_sql(self, command, xid):
        return {
            "end": "",
            "start": "begin",
            "abort": "rollback",
            "prepare": f"prepare transaction '{xid}'",
            "commit": f"commit prepared '{xid}'",
            "rollback": f"rollback prepared '{xid}'",
        }.get(command, "")

    def placeholder_sql(self, sql):
        counter = itertools.count(1)
        return re.sub(r"\?", lambda _: f"${next(counter)}", sql)

    def insert_ignore_template(self, table_and_values, pg_constraint):
        return f"insert into {table_and_values} on conflict ON CONSTRAINT {pg_constraint} do nothing"


_SPECIALS = {
    DB_TYPE_MYSQL: MysqlDBSpecial(),
    DB_TYPE_POSTGRES: PostgresDBSpecial(),
}

_current_db_type = DB_TYPE_MYSQL


def get_db_special(db_type):
    """Return the dialect for ``db_type``; an empty type means the current one."""
    if not db_type:
        db_type = _current_db_type
    try:
        return _SPECIALS[db_type]
    except KeyError:
        raise ValueError(f"unknown db type '{db_type}'") from None


def set_current_db_type(db_type):
    """Make ``db_type`` the default dialect."""
    global _current_db_type
    if db_type not in _SPECIALS:
        raise ValueError(f"unknown db type '{db_type}'")
    _current_db_type = db_type


def get_current_db_type():
    return _current_db_type