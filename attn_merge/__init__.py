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

import os

from . import common, config, functional
from ._version import __version__
from .common import ConfigurationError, StorageFormat
from .config import MergeConfig
from .functional import (
    merge_attn_states,
    merge_attn_states_list,
    merge_attn_states_out,
)

__all__ = [
    "__version__",
    "is_sanity_check_enable",
    "kernel_backend",
    "units_per_block",
    "common",
    "config",
    "functional",
    "ConfigurationError",
    "MergeConfig",
    "StorageFormat",
    "merge_attn_states",
    "merge_attn_states_list",
    "merge_attn_states_out",
]


def is_sanity_check_enable() -> bool:
    """
    Toggle this env variable to ``1`` can enable the extra device
    consistency checks inside attn_merge

    Default value is ``0``

    NOTE: this is only supposed to be used for testing or debugging,
    since the extra sanity-check overhead might be non-negligible
    """
    return os.environ.get("ATTN_MERGE_SANITY_CHECK", "0") == "1"


def kernel_backend() -> str:
    """
    Set the value of this env variable to choose the execution backend of the merge kernel,
    one of ``auto``, ``triton`` and ``torch``,
    where ``auto`` picks ``triton`` for cuda tensors and ``torch`` otherwise

    Default value is ``auto``
    """
    return os.environ.get("ATTN_MERGE_KERNEL_BACKEND", "auto").lower()


def units_per_block() -> int | None:
    """
    Set the value of this env variable to control how many (token, head, pack) units
    are handled by one block, which must be a power of 2

    Default value is ``None`` to use the default of the resolved backend,
    i.e. ``128`` for triton and ``65536`` for torch
    """
    value = os.environ.get("ATTN_MERGE_UNITS_PER_BLOCK", None)
    if value is None:
        return None

    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(
            f"ATTN_MERGE_UNITS_PER_BLOCK must be an integer, but got {value=}."
        ) from e
