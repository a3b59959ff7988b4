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
"""IdentityFile discovery in the ssh client config"""

import os
import re
import logging
from typing import Iterator, List, Optional
from .types import StrPath
from .paths import resolve_identity_file

__all__ = ["identity_file_paths", "split_directive"]

# Keyword and value may be separated by whitespace or by "=" with optional whitespace
DIRECTIVE_PATTERN = re.compile(r"^(\S+?)(?:\s*=\s*|\s+)(.*)$")


def split_directive(line: str) -> Optional[List[str]]:
    """Returns [keyword, first argument] for a config line, or None for
    blank lines, comments and keywords without an argument. A quoted
    argument keeps its quotes and may contain whitespace."""

    line = line.strip()
    if not line or line.startswith("#"):
        return None

    match = DIRECTIVE_PATTERN.match(line)
    if not match or not match.group(2):
        return None

    keyword, rest = match.group(1), match.group(2).strip()
    if rest[0] in "\"'":
        closing = rest.find(rest[0], 1)
        argument = rest if closing < 0 else rest[:closing + 1]
    else:
        argument = rest.split()[0]

    return [keyword, argument]

def identity_file_paths(config_file: StrPath, base_dir: StrPath) -> Iterator[str]:
    """Yields the resolved IdentityFile paths of the config file that exist
    on disk, in file order. A missing config file yields nothing. An error
    while reading is logged and ends the scan; paths found before it are
    still yielded."""

    if not os.path.isfile(config_file):
        return

    paths = []
    try:
        with open(config_file, "r", encoding="utf-8") as inf:
            for line in inf:
                directive = split_directive(line)
                if directive is None or directive[0].lower() != "identityfile":
                    continue

                resolved = resolve_identity_file(directive[1], base_dir)
                if resolved is not None and os.path.isfile(resolved):
                    paths.append(resolved)

    except (OSError, UnicodeDecodeError) as err:
        logging.error("Error while parsing ssh config file at %s: %s", config_file, err)

    yield from paths
