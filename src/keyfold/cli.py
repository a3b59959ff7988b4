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
"""Lists and caches the ssh keys of a user"""

import sys
import json
import argparse
import logging
from keyfold.cache import KeyCache
from keyfold.keychain import KeyChain
from keyfold.paths import SshPaths


def key_summary(key):
    """JSON friendly description of a key."""
    return {
        "path": key.absolute_path,
        "format": key.format.value,
        "type": key.key_type,
        "fingerprint": key.fingerprint,
        "encrypted": key.has_password,
        "private_key": key.private_key.absolute_path if key.private_key else None,
    }

def main(argv=None):
    """Reconcile the key directory, the ssh config and the key cache."""

    parser = argparse.ArgumentParser(description="""Finds the ssh keys in the
    key directory and in the IdentityFile directives of the ssh config,
    reports each key pair once, and records the keys in a cache file.""")

    parser.add_argument("-d", metavar="ssh_dir", dest="ssh_dir", action="store", default=None,
                        help="""Key directory to search. Defaults to
                        ~/.ssh.""")

    parser.add_argument("-c", metavar="config_file", dest="config_file", action="store", default=None,
                        help="""ssh client config to read IdentityFile
                        directives from. Defaults to config in the key
                        directory.""")

    parser.add_argument("-i", metavar="cache_file", dest="cache_file", action="store", default=None,
                        help="""Load known keys from this file and write
                        newly found keys to it. Defaults to keyfold.json in
                        the key directory.""")

    parser.add_argument("-o", metavar="output_file", dest="output_file", action="store", default=None,
                        help="""Write the JSON key list here instead of to
                        stdout, overwriting previous output if any.""")

    parser.add_argument("--load_from_disk", action="store_true",
                        help="""Search the key directory even if the cache
                        already knows some keys. Without this option the
                        directory is only searched when the cache is
                        empty.""")

    parser.add_argument("--purge_passwords", action="store_true",
                        help="""Remove stored key passphrases from the cache,
                        keeping only the fact that a key has one.""")

    convert = parser.add_mutually_exclusive_group()
    convert.add_argument("--convert_ppk", dest="convert_ppk", action="store_true", default=None,
                         help="""Convert PuTTY keys to OpenSSH format when
                         they are found. Stored in the cache file.""")
    convert.add_argument("--no_convert_ppk", dest="convert_ppk", action="store_false", default=None,
                         help="""Stop converting PuTTY keys.""")

    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages.")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s  - %(message)s")

    paths = SshPaths(args.ssh_dir, args.config_file, args.cache_file)
    cache = KeyCache(paths.cache_file)

    if args.convert_ppk is not None:
        cache.convert_ppk_automatically = args.convert_ppk
        cache.save()

    keychain = KeyChain(paths, cache)
    keys = [key_summary(key) for key in keychain.get_all_keys_yield(args.load_from_disk, args.purge_passwords)]
    logging.info("Found %d keys", len(keys))

    if args.output_file:
        logging.info("Writing key list to %s", args.output_file)
        with open(args.output_file, "w", encoding="utf-8") as outf:
            outf.write(json.dumps(keys, indent=4))
    else:
        sys.stdout.write(json.dumps(keys, indent=4) + "\n")

    return 0

if __name__ == "__main__":
    sys.exit(main())
