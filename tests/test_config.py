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
import unittest
from dataclasses import FrozenInstanceError
from unittest import TestCase
from unittest.mock import patch

import torch

import attn_merge
from attn_merge import ConfigurationError, MergeConfig
from attn_merge.testing import parameterize


class TestMergeConfig(TestCase):
    def test_default_from_env(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ATTN_MERGE_KERNEL_BACKEND", None)
            os.environ.pop("ATTN_MERGE_UNITS_PER_BLOCK", None)
            config = MergeConfig()
            self.assertEqual(config.kernel_backend, "auto")
            self.assertIsNone(config.units_per_block)

        with patch.dict(
            os.environ,
            {"ATTN_MERGE_KERNEL_BACKEND": "TORCH", "ATTN_MERGE_UNITS_PER_BLOCK": "256"},
        ):
            self.assertEqual(attn_merge.kernel_backend(), "torch")
            self.assertEqual(attn_merge.units_per_block(), 256)
            config = MergeConfig()
            self.assertEqual(config.kernel_backend, "torch")
            self.assertEqual(config.units_per_block, 256)

    def test_sanity_check_toggle(self):
        with patch.dict(os.environ, {"ATTN_MERGE_SANITY_CHECK": "0"}):
            self.assertFalse(attn_merge.is_sanity_check_enable())
        with patch.dict(os.environ, {"ATTN_MERGE_SANITY_CHECK": "1"}):
            self.assertTrue(attn_merge.is_sanity_check_enable())

    @parameterize("kernel_backend", ["cuda", "", "trition"])
    def test_invalid_kernel_backend(self, kernel_backend: str):
        with self.assertRaisesRegex(ConfigurationError, "kernel_backend"):
            MergeConfig(kernel_backend=kernel_backend)  # type: ignore[arg-type]

    @parameterize("units_per_block", [0, -4, 3, 100])
    def test_invalid_units_per_block(self, units_per_block: int):
        with self.assertRaisesRegex(ConfigurationError, "units_per_block"):
            MergeConfig(kernel_backend="torch", units_per_block=units_per_block)

    @parameterize("value", ["abc", "1.5", ""])
    def test_invalid_units_per_block_from_env(self, value: str):
        with patch.dict(os.environ, {"ATTN_MERGE_UNITS_PER_BLOCK": value}):
            with self.assertRaisesRegex(
                ConfigurationError, "ATTN_MERGE_UNITS_PER_BLOCK"
            ):
                attn_merge.units_per_block()
            with self.assertRaises(ConfigurationError):
                MergeConfig(kernel_backend="torch")

    def test_resolve_backend(self):
        cpu, cuda = torch.device("cpu"), torch.device("cuda", 0)

        self.assertEqual(
            MergeConfig(kernel_backend="auto").resolve_backend(cpu), "torch"
        )
        self.assertEqual(
            MergeConfig(kernel_backend="auto").resolve_backend(cuda), "triton"
        )
        self.assertEqual(
            MergeConfig(kernel_backend="torch").resolve_backend(cuda), "torch"
        )
        self.assertEqual(
            MergeConfig(kernel_backend="triton").resolve_backend(cuda), "triton"
        )
        with self.assertRaisesRegex(ConfigurationError, "cuda"):
            MergeConfig(kernel_backend="triton").resolve_backend(cpu)

    def test_frozen(self):
        config = MergeConfig(kernel_backend="torch")
        with self.assertRaises(FrozenInstanceError):
            config.kernel_backend = "triton"  # type: ignore[misc]


if __name__ == "__main__":
    unittest.main()
