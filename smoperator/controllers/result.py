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

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Result:
    """
    Outcome of one reconciliation pass.

    ``requeue`` asks for an immediate retry; ``requeue_after`` (seconds) asks
    for a delayed one. An ``error`` with neither set is still retried by the
    dispatcher after its error delay.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None

    @property
    def needs_requeue(self) -> bool:
        return self.requeue or self.requeue_after is not None or self.error is not None

    def describe(self) -> str:
        if self.requeue_after is not None:
            directive = f"requeue after {self.requeue_after}s"
        elif self.requeue:
            directive = "requeue immediately"
        elif self.error is not None:
            directive = "requeue on error"
        else:
            directive = "no further action"
        if self.error is not None:
            directive += f" (error: {self.error})"
        return directive


def no_requeue() -> Result:
    return Result()


def requeue_immediately() -> Result:
    return Result(requeue=True)


def requeue_after(interval: float, err: Optional[Exception] = None) -> Result:
    return Result(requeue_after=interval, error=err)


def requeue_if_error(err: Optional[Exception]) -> Result:
    return Result(error=err)


def requeue_immediately_unless_generation_changed(prev_generation: int, curr_generation: int) -> Result:
    # A new generation is delivered again by the watch, so an explicit requeue would be redundant
    if prev_generation == curr_generation:
        return requeue_immediately()
    return no_requeue()
