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

import math
import unittest
from unittest import TestCase

import torch

from attn_merge.functional.utils import (
    correct_attn_lse,
    correct_attn_out,
    safe_subtract,
    sanitize_lse,
)
from attn_merge.testing import assert_close, parameterize, ref_attn_with_lse

inf = float("inf")


class TestLSEUtils(TestCase):
    @property
    def seed(self) -> int:
        return 42

    def test_safe_subtract(self):
        a = torch.tensor([1.0, -inf, -inf, 2.0])
        b = torch.tensor([0.5, -inf, 1.0, -inf])

        self.assertEqual(safe_subtract(a, b).tolist(), [0.5, -inf, -inf, inf])

    def test_sanitize_lse(self):
        lse = torch.tensor([inf, -inf, 0.0, 3.0])

        self.assertEqual(sanitize_lse(lse).tolist(), [-inf, -inf, 0.0, 3.0])

    def test_correct_attn_lse(self):
        lse1 = torch.tensor([[0.0, 1.0, -inf, inf, -inf]])
        lse2 = torch.tensor([[0.0, 2.0, 3.0, 4.0, -inf]])

        lse = correct_attn_lse(lse1, lse2)

        expected = [
            math.log(2),
            math.log(math.exp(1.0) + math.exp(2.0)),
            3.0,
            4.0,
            -inf,
        ]
        for actual, exp in zip(lse.flatten().tolist(), expected):
            if math.isinf(exp):
                self.assertEqual(actual, exp)
            else:
                self.assertAlmostEqual(actual, exp, places=5)

    @parameterize("dtype", [torch.float32, torch.float16, torch.bfloat16])
    def test_correct_attn_out_with_ref_attn(self, dtype: torch.dtype):
        torch.manual_seed(self.seed)
        q = torch.randn(8, 2, 16)
        k = torch.randn(40, 2, 16)
        v = torch.randn(40, 2, 16)

        ref_out, ref_lse = ref_attn_with_lse(q, k, v)
        out1, lse1 = ref_attn_with_lse(q, k[:13], v[:13])
        out2, lse2 = ref_attn_with_lse(q, k[13:], v[13:])

        lse = correct_attn_lse(lse1, lse2)
        out = correct_attn_out(out1.to(dtype), lse1, out2.to(dtype), lse2, lse)

        self.assertEqual(out.dtype, dtype)
        assert_close(lse, ref_lse, atol=1e-5, rtol=1e-5, test_case="lse")
        assert_close(out, ref_out.to(dtype), atol=2e-2, rtol=2e-2, test_case="out")

    def test_ref_attn_with_empty_kv(self):
        q = torch.randn(4, 2, 8)
        k = torch.empty(0, 2, 8)
        v = torch.empty(0, 2, 8)

        out, lse = ref_attn_with_lse(q, k, v)

        self.assertEqual(tuple(out.shape), (4, 2, 8))
        self.assertEqual(tuple(lse.shape), (2, 4))
        self.assertTrue(torch.all(out == 0))
        self.assertTrue(torch.all(lse == -inf))


if __name__ == "__main__":
    unittest.main()
