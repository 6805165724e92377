"""Error types that carry machine-readable codes."""

from __future__ import annotations

import json
from enum import Enum
from typing import Iterator


class ErrorCode(str, Enum):
    """Machine-readable error categories."""

    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_ABORTED = "approval_aborted"
    SESSION_BUSY = "session_busy"

    def __str__(self) -> str:
        return self.value


class CodedError(Exception):
    """Base for errors that carry an error code."""

    code: ErrorCode


class ApprovalRequiredError(CodedError):
    """An action needs user approval before it can run."""

    code = ErrorCode.APPROVAL_REQUIRED

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(f"approval required: {reason}" if reason else "approval required")


class ApprovalAbortedError(CodedError):
    """The user declined an approval request."""

    code = ErrorCode.APPROVAL_ABORTED

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(f"approval aborted: {reason}" if reason else "approval aborted")


class SessionBusyError(CodedError):
    """A session already has a run in flight."""

    code = ErrorCode.SESSION_BUSY

    def __init__(self, app_name: str = "", user_id: str = "", session_id: str = "") -> None:
        self.app_name = app_name
        self.user_id = user_id
        self.session_id = session_id
        super().__init__(
            f"runtime: session {json.dumps(session_id)} is busy for "
            f"app={json.dumps(app_name)} user={json.dumps(user_id)}"
        )


def _chain(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def error_code_of(err: BaseException | None) -> ErrorCode | None:
    """Return the first error code found along the exception chain."""
    for one in _chain(err):
        code = getattr(one, "code", None)
        if isinstance(code, ErrorCode):
            return code
    return None


def is_error_code(err: BaseException | None, code: ErrorCode) -> bool:
    """Report whether the exception chain carries the given code."""
    return err is not None and error_code_of(err) == code


def is_session_busy(err: BaseException | None) -> bool:
    """Report whether the exception chain holds a SessionBusyError."""
    return any(isinstance(one, SessionBusyError) for one in _chain(err))