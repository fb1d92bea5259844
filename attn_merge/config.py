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

from dataclasses import dataclass, field
from typing import Literal, get_args

import torch

import attn_merge
from attn_merge.common.enum import MergeKernelBackend
from attn_merge.common.errors import ConfigurationError
from attn_merge.utils import is_power_of_2

__all__ = ["MergeConfig"]


@dataclass(frozen=True)
class MergeConfig:
    """The config dataclass for the merge engine,
    whose fields default to the corresponding env variables

    Args:
        kernel_backend (MergeKernelBackend): the execution backend,
            one of ``auto``, ``triton`` and ``torch``
        units_per_block (int | None): the number of (token, head, pack) units
            handled by one block, which must be a power of 2,
            or None to use the default of the resolved backend
    """

    kernel_backend: MergeKernelBackend = field(
        default_factory=lambda: attn_merge.kernel_backend()  # type: ignore[arg-type,return-value]
    )
    units_per_block: int | None = field(
        default_factory=lambda: attn_merge.units_per_block()
    )

    def __post_init__(self):
        if self.kernel_backend not in get_args(MergeKernelBackend):
            raise ConfigurationError(
                f"Unsupported {self.kernel_backend=}, "
                f"expected one of {get_args(MergeKernelBackend)}."
            )
        if self.units_per_block is not None and not is_power_of_2(
            self.units_per_block
        ):
            raise ConfigurationError(
                f"{self.units_per_block=} must be a positive power of 2."
            )

    def resolve_backend(self, device: torch.device) -> Literal["triton", "torch"]:
        """Resolve the concrete backend to launch on tensors living in ``device``

        Raises:
            ConfigurationError: if the triton backend is requested for non-cuda tensors
        """
        match self.kernel_backend:
            case "auto":
                return "triton" if device.type == "cuda" else "torch"
            case "triton":
                if device.type != "cuda":
                    raise ConfigurationError(
                        f"The triton backend requires cuda tensors, but got {device=}."
                    )
                return "triton"
            case _:
                return "torch"
