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
"""Locations of the key directory, the ssh client config and the key cache,
and resolution of IdentityFile arguments against them."""

import os
import logging
from typing import Optional
from .types import StrPath

__all__ = ["SshPaths", "resolve_identity_file"]

CACHE_FILENAME = "keyfold.json"


class SshPaths():
    """Where keys, the client config and the cache live. Defaults to ~/.ssh."""

    def __init__(self, base_dir: Optional[StrPath] = None, config_file: Optional[StrPath] = None,
                 cache_file: Optional[StrPath] = None):
        if base_dir is None:
            base_dir = os.path.join(os.path.expanduser("~"), ".ssh")

        self.base_dir = os.path.normpath(os.path.abspath(os.path.expanduser(base_dir)))
        self.config_file = self._absolute(config_file, "config")
        self.cache_file = self._absolute(cache_file, CACHE_FILENAME)

    def _absolute(self, path: Optional[StrPath], default_name: str) -> str:
        if path is None:
            return os.path.join(self.base_dir, default_name)
        return os.path.normpath(os.path.abspath(os.path.expanduser(path)))

    def __repr__(self) -> str:
        return f"SshPaths(base_dir={self.base_dir!r}, config_file={self.config_file!r})"


def _relative_to_key_dir(rest: str) -> str:
    # ~/.ssh is the conventional spelling of the key directory itself
    if rest == ".ssh" or rest.startswith(".ssh/"):
        return rest[len(".ssh/"):]
    return rest

def resolve_identity_file(raw: Optional[str], base_dir: StrPath) -> Optional[str]:
    """Turns the argument of an IdentityFile directive into an absolute,
    normalized path. Returns None for arguments that can't name a file: a
    bare "~", a "~user" without a path, or a path that can't be normalized.

    "~/" and "~user/" prefixes are anchored at base_dir, environment
    variables are expanded, and relative paths are taken relative to
    base_dir."""

    if raw is None:
        return None

    path = raw.strip().strip("\"'")
    if not path:
        return None
    if path == "~":
        logging.warning("IdentityFile path %s names the home directory, not a file", raw)
        return None

    base_dir = str(base_dir)

    if path.startswith("~/"):
        path = os.path.join(base_dir, _relative_to_key_dir(path[2:]))
    elif path.startswith("~"):
        # ~user/rest: only rest is meaningful here
        slash = path.find("/")
        if slash < 0:
            logging.warning("Cannot resolve IdentityFile path %s", raw)
            return None
        path = os.path.join(base_dir, _relative_to_key_dir(path[slash + 1:]))

    path = os.path.expandvars(path)

    if not os.path.isabs(path):
        path = os.path.join(base_dir, path)

    try:
        if "\0" in path:
            raise ValueError("embedded null byte")
        return os.path.normpath(os.path.abspath(path))
    except ValueError as err:
        logging.warning("Failed to resolve IdentityFile path %s: %s", raw, err)
        return None
