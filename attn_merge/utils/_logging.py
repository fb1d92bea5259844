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

import logging
import os

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def log_level() -> str:
    """
    Set the value of this env variable to control the level of the ``attn_merge`` logger

    Default value is ``INFO``
    """
    return os.environ.get("ATTN_MERGE_LOG_LEVEL", "INFO").upper()


def log_file() -> str | None:
    """
    Set the value of this env variable to additionally write the logs into the given file

    Default value is ``None``
    """
    return os.environ.get("ATTN_MERGE_LOG_FILE", None)


class AttnMergeLogger(logging.Logger):
    def __init__(self, name):
        super().__init__(name)
        self.setLevel(log_level())
        self.addHandler(logging.StreamHandler())

        log_path = log_file()
        if log_path is not None:
            self.addHandler(logging.FileHandler(log_path))

        # Configure log format
        for handler in self.handlers:
            handler.setFormatter(logging.Formatter(LOG_FORMAT))

    def _prefixed(self, msg) -> str:
        return f"{self.name}: {msg}"

    def debug(self, msg, *args, **kwargs):
        super().debug(self._prefixed(msg), *args, **kwargs)


logger = AttnMergeLogger("attn_merge")
