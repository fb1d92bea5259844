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

from . import nvtx
from ._utils import (
    is_fp_dtype_at_least,
    is_power_of_2,
    max_fp_dtype,
    set_random_seed,
    to_higher_fp_dtype,
)
from ._logging import logger

__all__ = [
    "nvtx",
    "logger",
    "is_fp_dtype_at_least",
    "is_power_of_2",
    "max_fp_dtype",
    "set_random_seed",
    "to_higher_fp_dtype",
]
