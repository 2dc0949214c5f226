"""Protocol constants and the errors that carry a transaction result."""

# global/branch transaction status
STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_SUCCEED = "succeed"
STATUS_FAILED = "failed"
STATUS_ABORTING = "aborting"

# result of a transaction or a branch
RESULT_FAILURE = "FAILURE"  # HTTP 409, gRPC code Aborted
RESULT_SUCCESS = "SUCCESS"  # HTTP 200, gRPC code OK
RESULT_ONGOING = "ONGOING"  # HTTP 425, gRPC code FailedPrecondition

# branch operations
OP_TRY = "try"
OP_CONFIRM = "confirm"
OP_CANCEL = "cancel"
OP_ACTION = "action"
OP_COMPENSATE = "compensate"
OP_COMMIT = "commit"
OP_ROLLBACK = "rollback"

# database drivers
DB_TYPE_MYSQL = "mysql"
DB_TYPE_POSTGRES = "postgres"
DB_TYPE_REDIS = "redis"

# json-rpc
JRPC = "json-rpc"
JRPC_CODE_FAILURE = -32901
JRPC_CODE_ONGOING = -32902

# special barrier used by Msg.do_and_submit
MSG_DO_BRANCH0 = "00"
MSG_DO_BARRIER1 = "01"
MSG_DO_OP = "msg"
MSG_TOPIC_PREFIX = "topic://"

XA_BARRIER1 = "01"

PROTOCOL_GRPC = "grpc"
PROTOCOL_HTTP = "http"

# HTTP bodies for a successful or failed branch
MAP_SUCCESS = {"dtm_result": RESULT_SUCCESS}
MAP_FAILURE = {"dtm_result": RESULT_FAILURE}


class DtmError(Exception):
    """Base class of the errors that stand for a transaction result."""

    result = ""

    def __init__(self, message=None):
        super().__init__(self.result if message is None else message)


class FailureError(DtmError):
    """The branch or transaction failed and should be rolled back."""

    result = RESULT_FAILURE


class OngoingError(DtmError):
    """The branch is not finished yet and should be retried later."""

    result = RESULT_ONGOING


class DuplicatedError(DtmError):
    """A msg branch was already handled by its prepared query."""

    result = "DUPLICATED"


def error_message_to_error(message, error_class):
    """Build ``error_class`` from ``message``, appending its result word once."""
    suffix = " " + error_class.result
    if message.endswith(suffix):
        message = message[: -len(suffix)]
    return error_class(f"{message} {error_class.result}")