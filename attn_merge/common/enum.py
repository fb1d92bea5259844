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

from enum import Enum
from typing import Literal, TypeAlias

import torch

from .errors import ConfigurationError

MergeKernelBackend: TypeAlias = Literal["auto", "triton", "torch"]

# number of bits moved by one execution unit per load/store
PACK_BITS = 128


class StorageFormat(Enum):
    """The enum used to specify the storage format of the attention output we support"""

    FP32 = "fp32"
    FP16 = "fp16"
    BF16 = "bf16"

    _FROM_DTYPE_MAP: dict[torch.dtype, "StorageFormat"]
    _TO_DTYPE_MAP: dict["StorageFormat", torch.dtype]

    @classmethod
    def _lazy_init_dtype_maps(cls) -> None:
        if "_FROM_DTYPE_MAP" in cls.__dict__:
            return

        cls._TO_DTYPE_MAP = {
            cls.FP32: torch.float32,
            cls.FP16: torch.float16,
            cls.BF16: torch.bfloat16,
        }
        cls._FROM_DTYPE_MAP = {v: k for k, v in cls._TO_DTYPE_MAP.items()}

    @classmethod
    def from_dtype(cls, dtype: torch.dtype) -> "StorageFormat":
        cls._lazy_init_dtype_maps()
        try:
            return cls._FROM_DTYPE_MAP[dtype]  # type: ignore[index]
        except KeyError:
            raise ConfigurationError(
                f"Unsupported storage format {dtype=}, "
                f"expected one of {list(cls._FROM_DTYPE_MAP.keys())}."  # type: ignore[union-attr]
            ) from None

    @property
    def dtype(self) -> torch.dtype:
        self.__class__._lazy_init_dtype_maps()
        return self._TO_DTYPE_MAP[self]

    @property
    def itemsize(self) -> int:
        return self.dtype.itemsize

    @property
    def pack_width(self) -> int:
        """Number of elements held by one 128-bit pack, i.e. 4 for fp32 and 8 for fp16/bf16"""
        return PACK_BITS // (self.itemsize * 8)

    def promote(self, tensor: torch.Tensor) -> torch.Tensor:
        return tensor.to(torch.float32)

    def demote(self, tensor: torch.Tensor) -> torch.Tensor:
        return tensor.to(self.dtype)
