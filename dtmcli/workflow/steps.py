"""Results of workflow steps and their conversion to and from HTTP."""

import dataclasses

import requests

from ..consts import STATUS_FAILED, STATUS_SUCCEED, DtmError, FailureError, OngoingError, error_message_to_error
from ..http import STATUS_CONFLICT, STATUS_OK, STATUS_TOO_EARLY


@dataclasses.dataclass
class StepResult:
    """The outcome of one recorded workflow step.

    A result is not saved when ``error`` is set or ``status`` is empty.
    When the status is succeed, ``data`` is the result; when it is
    failed, ``data`` is the error message.
    """

    error: BaseException | None = None
    status: str = ""
    data: bytes | None = None

    def unwrap(self):
        """Return the data, or raise the step's error."""
        if self.error is not None:
            raise self.error
        return self.data


def wf_error_to_status(error):
    """Map a step error to the status it is saved with."""
    if error is None:
        return STATUS_SUCCEED
    if isinstance(error, FailureError):
        return STATUS_FAILED
    return ""


def http_resp_to_dtm_error(response):
    """Return the body of a branch response and the dtm error it stands for.

    409 means failure, 425 means ongoing, any other status than 200 is a
    plain error; the error is None on success.
    """
    code = response.status_code
    data = response.content
    text = data.decode("utf-8", errors="replace")
    if code == STATUS_TOO_EARLY:
        return data, error_message_to_error(text, OngoingError)
    if code == STATUS_CONFLICT:
        return data, error_message_to_error(text, FailureError)
    if code != STATUS_OK:
        return data, DtmError(text)
    return data, None


def step_result_from_local(data, error):
    """Wrap the outcome of a local step."""
    return StepResult(error=error, status=wf_error_to_status(error), data=data)


def step_result_from_http(response, error=None, translate=http_resp_to_dtm_error):
    """Wrap an HTTP response, or the error raised while sending the request."""
    if error is not None:
        return StepResult(error=error)
    data, translated = translate(response)
    return StepResult(error=translated, status=wf_error_to_status(translated), data=data)


def _json_response(status, body):
    """Build a JSON response that replays ``body`` without a network call."""
    response = requests.Response()
    response.status_code = status
    response._content = bytes(body or b"")
    response.headers["Content-Type"] = "application/json"
    response.encoding = "utf-8"
    return response


def _step_result_to_http(result):
    """Turn a step result back into a response, raising its error."""
    return _json_response(STATUS_OK, result.unwrap())