# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Classification of SageMaker API failures.

SageMaker reports a missing training job as a generic ValidationException
(HTTP 400) and throttling as a ThrottlingException (also HTTP 400, not 429).
Both are recognized only by an exact code and message match. A change in the
upstream message wording turns them into UNRECOVERABLE errors.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

NOT_FOUND_CODE = "ValidationException"
NOT_FOUND_MESSAGE = "Requested resource not found."

THROTTLING_CODE = "ThrottlingException"
THROTTLING_MESSAGE = "Rate exceeded"

_TRANSIENT_TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    RATE_LIMITED = "RateLimited"
    SERVER_FAULT = "ServerFault"
    UNRECOVERABLE = "Unrecoverable"


@dataclass(frozen=True)
class RemoteError:
    """A SageMaker failure, classified once at the client boundary"""

    kind: ErrorKind
    code: str = ""
    message: str = ""
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def is_not_found(self) -> bool:
        return self.kind == ErrorKind.NOT_FOUND

    @property
    def is_transient(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.SERVER_FAULT)

    def __str__(self) -> str:
        return self.detail or f"{self.code}: {self.message}"


def is_not_found_signature(code: str, message: str) -> bool:
    return code == NOT_FOUND_CODE and message == NOT_FOUND_MESSAGE


def is_throttling_signature(code: str, message: str) -> bool:
    return code == THROTTLING_CODE and message == THROTTLING_MESSAGE


def classify_client_error(code: str, message: str, status_code: Optional[int], detail: str = "") -> RemoteError:
    if is_not_found_signature(code, message):
        kind = ErrorKind.NOT_FOUND
    elif status_code is not None and status_code >= 500:
        kind = ErrorKind.SERVER_FAULT
    elif is_throttling_signature(code, message):
        kind = ErrorKind.RATE_LIMITED
    else:
        kind = ErrorKind.UNRECOVERABLE
    return RemoteError(kind=kind, code=code, message=message, status_code=status_code, detail=detail)


def classify_error(exc: Exception) -> RemoteError:
    """Map an exception raised by the boto3 SageMaker client into a RemoteError"""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return classify_client_error(
            code=error.get("Code", ""),
            message=error.get("Message", ""),
            status_code=status_code,
            detail=str(exc),
        )
    if isinstance(exc, _TRANSIENT_TRANSPORT_ERRORS):
        return RemoteError(kind=ErrorKind.SERVER_FAULT, code=type(exc).__name__, message=str(exc), detail=str(exc))
    return RemoteError(kind=ErrorKind.UNRECOVERABLE, code=type(exc).__name__, message=str(exc), detail=str(exc))
