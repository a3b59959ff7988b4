#!/usr/bin/env python3
# Copyright 2023 Cisco Systems, Inc. and its affiliates
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
#
# SPDX-License-Identifier: Apache-2.0
"""Per-enumeration record of the key paths already reported"""

import os
from typing import Iterator, Set
from .types import StrPath

__all__ = ["ProcessedPaths"]


class ProcessedPaths():
    """Set of absolute paths, compared case-insensitively. One instance
    belongs to one enumeration; once a path is in it, no key for that path
    may be reported again."""

    def __init__(self) -> None:
        self._paths: Set[str] = set()

    @staticmethod
    def _normalize(path: StrPath) -> str:
        return os.path.normpath(os.path.abspath(path)).casefold()

    def add(self, path: StrPath) -> None:
        self._paths.add(self._normalize(path))

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        return self._normalize(path) in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._paths))
