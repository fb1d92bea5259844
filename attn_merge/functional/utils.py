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

import torch
import torch.nn.functional as F

from attn_merge.utils import to_higher_fp_dtype


def safe_subtract(
    a: torch.Tensor,
    b: torch.Tensor,
) -> torch.Tensor:
    """Safely subtracts two tensors,
    where the subtraction results of two -inf will be set to -inf.
    """

    eq = (a == b) & (a == float("-inf"))
    sub = a - b
    sub = torch.where(eq, torch.fill(sub, float("-inf")), sub)

    return sub


def sanitize_lse(lse: torch.Tensor) -> torch.Tensor:
    """Replace any infinite lse (either +inf or -inf) with -inf,
    since an infinite lse marks a partition that contributes nothing
    """
    return torch.where(torch.isinf(lse), torch.fill(lse, float("-inf")), lse)


def correct_attn_lse(
    lse1: torch.Tensor,
    lse2: torch.Tensor,
) -> torch.Tensor:
    """
    Corrects the log-sum-exp tensor for two partitions of the key/value sequence.

    Args:
        lse1 (torch.Tensor): log-sum-exp tensor, with shape: [num_heads, num_tokens]
        lse2 (torch.Tensor): log-sum-exp tensor, with shape: [num_heads, num_tokens]

    Returns:
        torch.Tensor: corrected log-sum-exp tensor, with shape: [num_heads, num_tokens]
    """

    assert lse1.dtype == lse2.dtype

    lse1, lse2 = sanitize_lse(lse1), sanitize_lse(lse2)
    min_lse = to_higher_fp_dtype(torch.min(lse1, lse2), torch.float32)
    max_lse = to_higher_fp_dtype(torch.max(lse1, lse2), torch.float32)

    # formula derivation:
    # lse = log(exp(lse1) + exp(lse2))
    #     = max_lse + log(1 + exp(min_lse - max_lse))
    #     = max_lse + softplus(min_lse - max_lse)
    # where max_lse = -inf yields lse = -inf
    lse = max_lse + F.softplus(safe_subtract(min_lse, max_lse))

    return lse.to(lse1.dtype)


def correct_attn_out(
    out1: torch.Tensor,
    lse1: torch.Tensor,
    out2: torch.Tensor,
    lse2: torch.Tensor,
    lse: torch.Tensor,
) -> torch.Tensor:
    """
    Corrects the output tensor for two partitions of the key/value sequence.

    Args:
        out1 (torch.Tensor): local output tensor1, with shape: [num_tokens, num_heads, head_size]
        lse1 (torch.Tensor): local lse for out1, with shape: [num_heads, num_tokens]
        out2 (torch.Tensor): local output tensor2, with shape: [num_tokens, num_heads, head_size]
        lse2 (torch.Tensor): local lse for out2, with shape: [num_heads, num_tokens]
        lse (torch.Tensor): global lse, with shape: [num_heads, num_tokens]

    Returns:
        torch.Tensor: corrected global output tensor, with shape: [num_tokens, num_heads, head_size]
    """
    assert out1.dtype == out2.dtype and lse1.dtype == lse2.dtype == lse.dtype

    w1, w2 = [
        # formula: wi = exp(lsei - lse)
        to_higher_fp_dtype(
            # shape: [h, t] -> [t, h, 1]
            safe_subtract(sanitize_lse(lsei), lse)
            .exp()
            .transpose(0, 1)
            .unsqueeze(-1),
            torch.float32,
        )
        for lsei in [lse1, lse2]
    ]

    # formula: out = w1 * out1 + w2 * out2
    out = w1 * out1.to(torch.float32) + w2 * out2.to(torch.float32)

    return out.to(out1.dtype)
