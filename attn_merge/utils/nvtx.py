# Copyright (c) 2025-2026 SandAI. All Rights Reserved.
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

from functools import wraps
from typing import Any, Callable, TypeVar, cast

import torch

# keep the signature of the wrapped func visible to mypy
F = TypeVar("F", bound=Callable[..., Any])


def _is_nvtx_available() -> bool:
    # NOTE: torch.cuda.nvtx raises on cpu-only builds
    return torch.cuda.is_available()


class add_nvtx_event:
    """
    Context manager to add an NVTX event around a code block,
    which is a no-op when cuda is unavailable.

    Args:
        event_name (str): The name of the event to be recorded.
    """

    def __init__(self, event_name: str):
        self.enter_name = event_name
        self.enabled = _is_nvtx_available()

    def __enter__(self):
        if self.enabled:
            torch.cuda.nvtx.range_push(self.enter_name)
        return self

    def __exit__(self, *excinfo):
        if self.enabled:
            torch.cuda.nvtx.range_pop()


def instrument_nvtx(func: F) -> F:
    """
    Decorator that records an NVTX range for the duration of the function call.

    Args:
        func (Callable): The function to be decorated.

    Returns:
        Callable: The wrapped function that is now being profiled.
    """

    @wraps(func)
    def wrapped_fn(*args, **kwargs):
        with add_nvtx_event(func.__qualname__):
            ret_val = func(*args, **kwargs)
        return ret_val

    return cast(F, wrapped_fn)
