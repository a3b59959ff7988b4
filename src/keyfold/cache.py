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
"""Persistent cache of known keys and settings, kept in a JSON file"""

import os
import json
import logging
import tempfile
from typing import List, Optional
from .types import KeyRecord, Settings, StrPath

__all__ = ["KeyCache"]


def _fsync_directory(directory: str) -> None:
    """Makes a rename inside directory durable."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class KeyCache():
    """Records of previously seen keys, keyed by absolute path, plus the
    settings singleton. Changes are held in memory until save(). With no
    path the cache lives in memory only.

    Records handed out are copies; write changes back with update()."""

    def __init__(self, path: Optional[StrPath] = None):
        self.path = os.path.abspath(os.path.expanduser(path)) if path is not None else None
        self._records: List[KeyRecord] = []
        self._settings: Settings = {"convert_ppk_automatically": False}
        self._dirty = False
        self.changes = 0

        if self.path is not None and os.path.exists(self.path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as inf:
            try:
                data = json.load(inf)
            except json.JSONDecodeError as err:
                raise ValueError(f"Cache file {self.path} is corrupt: {err}") from err

        if (not isinstance(data, dict) or not isinstance(data.get("keys", []), list)
                or not isinstance(data.get("settings", {}), dict)):
            raise ValueError(f"Cache file {self.path} has an unexpected layout")

        for index, record in enumerate(data.get("keys", [])):
            if not isinstance(record, dict) or not isinstance(record.get("absolute_path"), str):
                raise ValueError(f"Cache file {self.path} has a malformed key record at index {index}")
            self._records.append({"absolute_path": record["absolute_path"],
                                  "password": record.get("password"),
                                  "format": record.get("format", "Unknown")})

        settings = data.get("settings", {})
        self._settings["convert_ppk_automatically"] = bool(settings.get("convert_ppk_automatically", False))
        logging.debug("Loaded %d cached keys from %s", len(self._records), self.path)

    def __len__(self) -> int:
        return len(self._records)

    def list_all(self) -> List[KeyRecord]:
        """All records in insertion order."""
        return [KeyRecord(**record) for record in self._records]

    def find_by_path(self, path: str) -> Optional[KeyRecord]:
        for record in self._records:
            if record["absolute_path"] == path:
                return KeyRecord(**record)
        return None

    def add(self, record: KeyRecord) -> None:
        """Adds a new record. Raises ValueError if the path is already cached."""
        if self.find_by_path(record["absolute_path"]) is not None:
            raise ValueError(f"{record['absolute_path']} is already cached")
        self._records.append(KeyRecord(**record))
        self._dirty = True

    def update(self, record: KeyRecord) -> None:
        """Replaces the record with the same path. Only an actual difference
        leaves something to save."""
        for index, existing in enumerate(self._records):
            if existing["absolute_path"] == record["absolute_path"]:
                if existing != record:
                    self._records[index] = KeyRecord(**record)
                    self._dirty = True
                return
        raise KeyError(record["absolute_path"])

    @property
    def settings(self) -> Settings:
        return Settings(**self._settings)

    @property
    def convert_ppk_automatically(self) -> bool:
        return self._settings["convert_ppk_automatically"]

    @convert_ppk_automatically.setter
    def convert_ppk_automatically(self, value: bool) -> None:
        if self._settings["convert_ppk_automatically"] != bool(value):
            self._settings["convert_ppk_automatically"] = bool(value)
            self._dirty = True

    @property
    def pending(self) -> bool:
        return self._dirty

    def save(self) -> None:
        """Commits pending changes. The file is replaced atomically; an
        OSError while writing is raised to the caller and leaves the old file
        in place."""

        if not self._dirty:
            return

        if self.path is not None:
            directory = os.path.dirname(self.path)
            os.makedirs(directory, mode=0o700, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".keyfold-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as outf:
                    outf.write(json.dumps({"settings": self._settings, "keys": self._records}, indent=4))
                    outf.flush()
                    os.fsync(outf.fileno())
                os.replace(tmp_path, self.path)
                _fsync_directory(directory)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

        self._dirty = False
        self.changes += 1
