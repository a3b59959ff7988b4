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
"""Discovery of keys in the key directory and in the ssh config.

Keys are reported once per pair: a public key carries its private key, so
the private key file is not reported on its own. Private keys without a .pub
file are reported standalone."""

import os
import logging
from typing import Iterator, Optional
from . import key_factory
from .keys import SshKey, KeyParseError, KeyConversionError
from .ledger import ProcessedPaths
from .paths import SshPaths
from .ssh_config import identity_file_paths
from .keyfold_utility import (list_files, has_extension, is_reserved_filename, private_key_path,
                              public_key_path, ppk_public_key_path)

__all__ = ["scan", "load_identity_file", "mark_consumed"]


def mark_consumed(key: SshKey, ledger: ProcessedPaths) -> None:
    """Adds the key's path to the ledger, and the path of the other half of
    its pair if that file exists."""

    ledger.add(key.absolute_path)

    if key.is_public:
        partner = private_key_path(key.absolute_path)
        if partner == key.absolute_path:
            return
    elif key.is_ppk:
        partner = ppk_public_key_path(key.absolute_path)
    else:
        partner = public_key_path(key.absolute_path)

    if os.path.isfile(partner):
        ledger.add(partner)

def _consume(key: SshKey, ledger: ProcessedPaths, convert_ppk: bool, factory) -> Optional[SshKey]:
    """Marks key as reported, converting PuTTY keys first when asked to.
    Returns the key to report, or None if the converted key was already
    reported. A failed conversion reports the PuTTY key itself."""

    converted = key
    if convert_ppk and key.is_ppk:
        try:
            converted = factory.convert(key, True)
        except (KeyConversionError, OSError) as err:
            logging.error("Error while converting %s to OpenSSH format: %s", key.absolute_path, err)

    # Checked before marking: marking the PuTTY key also marks its .pub
    duplicate = converted is not key and converted.absolute_path in ledger

    mark_consumed(key, ledger)
    if converted is not key:
        mark_consumed(converted, ledger)

    return None if duplicate else converted

def load_identity_file(path: str, ledger: ProcessedPaths, convert_ppk: bool = False,
                       factory=key_factory) -> Optional[SshKey]:
    """Loads the key an IdentityFile directive points at. IdentityFile
    usually names a private key, so for a path without an extension the .pub
    next to it is preferred. Returns None, logging a warning, if nothing can
    be loaded."""

    if not os.path.splitext(path)[1]:
        pub_path = public_key_path(path)
        if os.path.isfile(pub_path) and pub_path not in ledger:
            try:
                key = factory.from_path(pub_path)
            except (KeyParseError, OSError) as err:
                logging.debug("Public key %s not loaded, trying %s: %s", pub_path, path, err)
            else:
                ledger.add(pub_path)
                ledger.add(path)
                return _consume(key, ledger, convert_ppk, factory)

    try:
        key = factory.from_path(path)
    except (KeyParseError, OSError) as err:
        logging.warning("Error while reading key from IdentityFile path %s: %s", path, err)
        return None

    return _consume(key, ledger, convert_ppk, factory)

def scan(paths: SshPaths, convert_ppk: bool = False, ledger: Optional[ProcessedPaths] = None,
         factory=key_factory) -> Iterator[SshKey]:
    """Yields the keys in the key directory, then the keys named by
    IdentityFile directives that were not found there. Paths already in
    ledger are skipped; every reported path is added to it."""

    if ledger is None:
        ledger = ProcessedPaths()

    # Public and PuTTY keys first, so that they claim their private keys
    for path in list_files(paths.base_dir):
        if not has_extension(path, ".pub", ".ppk") or path in ledger:
            continue

        try:
            key = factory.from_path(path)
        except (KeyParseError, OSError) as err:
            logging.error("Error while reading key from %s: %s", path, err)
            continue

        key = _consume(key, ledger, convert_ppk, factory)
        if key is not None:
            yield key

    # Private keys without a .pub file
    for path in list_files(paths.base_dir):
        if path in ledger or has_extension(path, ".pub", ".ppk") or is_reserved_filename(path):
            continue

        try:
            key = factory.from_path(path)
        except (KeyParseError, OSError):
            # Not every file in the directory is a key
            continue

        # With a .pub present the pair was handled above
        if key.is_public or os.path.isfile(public_key_path(path)):
            continue

        ledger.add(path)
        yield key

    for path in identity_file_paths(paths.config_file, paths.base_dir):
        if path in ledger:
            continue

        key = load_identity_file(path, ledger, convert_ppk, factory)
        if key is not None:
            yield key
