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
"""KeyChain class for Keyfold"""

import os
import logging
from . import key_factory
from . import disk_scanner
from .keys import SshKey, KeyParseError
from .ledger import ProcessedPaths
from .ssh_config import identity_file_paths
from .keyfold_utility import private_key_path, public_key_path

__all__ = ["KeyChain"]

class KeyChain():
    """Merges the cached keys, the keys named in the ssh config and the keys
    in the key directory into one list without duplicates, and keeps the
    cache in step with what was found."""

    def __init__(self, paths, cache, factory=key_factory):
        self.paths = paths
        self.cache = cache
        self.factory = factory

    def get_all_keys(self, load_from_disk=False, purge_passwords=False):
        """Returns every key at once. Same order as get_all_keys_yield."""
        return list(self.get_all_keys_yield(load_from_disk, purge_passwords))

    def get_all_keys_yield(self, load_from_disk=False, purge_passwords=False):
        """Yields each key once, by absolute path: cached keys first (unless
        load_from_disk), then keys named by IdentityFile directives, then,
        when loading from disk or the cache is empty, the key directory.
        Keys from the config and the directory are written to the cache as
        they are yielded."""

        ledger = ProcessedPaths()
        cache_has_records = len(self.cache.list_all()) > 0

        if not load_from_disk and cache_has_records:
            yield from self._cached_keys(ledger)

        convert_ppk = self.cache.convert_ppk_automatically

        for path in identity_file_paths(self.paths.config_file, self.paths.base_dir):
            if path in ledger:
                continue

            key = disk_scanner.load_identity_file(path, ledger, convert_ppk, self.factory)
            if key is None:
                continue

            self._sync(key, purge_passwords)
            yield key

        if load_from_disk or not cache_has_records:
            for key in disk_scanner.scan(self.paths, convert_ppk, ledger, self.factory):
                self._sync(key, purge_passwords)
                yield key

    def _key_from_record(self, record):
        """Loads the cached key from disk with its cached password, or rebuilds
        it from the record alone when the file can't be read."""
        if os.path.isfile(record["absolute_path"]):
            try:
                return self.factory.from_path(record["absolute_path"], record["password"])
            except (KeyParseError, OSError) as err:
                logging.warning("Cached key %s could not be read: %s", record["absolute_path"], err)
        return SshKey.from_record(record)

    def _cached_keys(self, ledger):
        for record in self.cache.list_all():
            key = self._key_from_record(record)
            if key.absolute_path in ledger:
                continue
            ledger.add(key.absolute_path)

            if key.is_public or key.absolute_path.lower().endswith(".pub"):
                partner = private_key_path(key.absolute_path)
                if partner != key.absolute_path and os.path.isfile(partner):
                    ledger.add(partner)
                yield key
                continue

            pub_path = public_key_path(key.absolute_path)
            if not os.path.isfile(pub_path):
                # Standalone private key
                yield key
                continue

            if pub_path in ledger:
                continue

            # The public key supersedes its cached private key
            try:
                public_key = self.factory.from_path(pub_path, record["password"])
            except (KeyParseError, OSError) as err:
                logging.warning("Error while loading public key from cache path %s: %s", pub_path, err)
                yield key
                continue

            ledger.add(pub_path)
            yield public_key

    def _sync(self, key, purge_passwords):
        """Inserts or updates the cache record for key. Writes only when the
        record actually changes."""

        found = self.cache.find_by_path(key.absolute_path)

        if found is None:
            if purge_passwords:
                key.password = "" if key.has_password else None
            self.cache.add(key.to_record())
            self.cache.save()
            return

        if found["password"] is not None:
            key.password = found["password"]
        if purge_passwords:
            key.password = "" if key.has_password else None
            found["password"] = key.password
        found["format"] = key.format.value

        self.cache.update(found)
        self.cache.save()
