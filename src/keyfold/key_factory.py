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
"""Builds SshKey objects from key files and converts keys between the
OpenSSH and PuTTY formats."""

import os
import re
import logging
from typing import List, Optional
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from .keys import SshKey, KeyFormat, KeyParseError, KeyConversionError
from .keyfold_utility import (get_privkey_data, private_key_path, public_key_path,
                              write_private_file)
from .openssh import (OPENSSH_BEGIN, parse_public_key_line, read_openssh_private_key,
                      write_openssh_private_key, private_fields)
from .ppk import read_ppk, write_ppk, ppk_to_openssh_fields, openssh_fields_to_ppk

__all__ = ["from_path", "convert"]

# Key files are small; anything larger is something else
MAX_KEY_FILE_SIZE = 65536

PEM_PRIVATE_KEY_PATTERN = re.compile(r"-{5}BEGIN (?:RSA |DSA |EC |ENCRYPTED )?PRIVATE KEY-{5}")


def _read_key_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as inf:
            text = inf.read(MAX_KEY_FILE_SIZE + 1)
    except (OSError, UnicodeDecodeError) as err:
        raise KeyParseError(f"cannot read {path}: {err}") from err

    if len(text) > MAX_KEY_FILE_SIZE:
        raise KeyParseError(f"{path} is too large to be a key file")
    return text

def from_path(path, password: Optional[str] = None) -> SshKey:
    """Loads the key stored at path. Raises KeyParseError if the file can't
    be read or isn't a key in a format we recognise."""

    path = os.path.abspath(path)
    text = _read_key_file(path)

    try:
        if text.lstrip().startswith("PuTTY-User-Key-File-"):
            return _ppk_key(path, text, password)
        if OPENSSH_BEGIN in text:
            return _openssh_private_key(path, text, password)
        if PEM_PRIVATE_KEY_PATTERN.search(text):
            return _pem_private_key(path, text, password)
        return _public_key(path, text, password)
    except KeyParseError:
        raise
    except (ValueError, OSError) as err:
        raise KeyParseError(f"{path}: {err}") from err

def _public_key(path: str, text: str, password: Optional[str]) -> SshKey:
    line = parse_public_key_line(text)
    return SshKey(path, KeyFormat.OPENSSH_PUBLIC, password=password, key_type=line.key_type,
                  public_blob=line.blob, comment=line.comment,
                  private_key=_load_private_counterpart(path, password))

def _load_private_counterpart(path: str, password: Optional[str]) -> Optional[SshKey]:
    """The private key next to a public key, or None if it is missing or
    unreadable. The public key stays usable either way."""

    candidate = private_key_path(path)
    if candidate == path or not os.path.isfile(candidate):
        return None

    try:
        key = from_path(candidate, password)
    except KeyParseError as err:
        logging.debug("Private key %s for %s not loaded: %s", candidate, path, err)
        return None

    return None if key.is_public else key

def _openssh_private_key(path: str, text: str, password: Optional[str]) -> SshKey:
    container = read_openssh_private_key(text)
    comment = ""
    if container.private_section is not None:
        try:
            comment = private_fields(container)[-1].decode("utf-8", "replace")
        except ValueError as err:
            # Security key layouts aren't split; the comment is optional
            logging.debug("Comment of %s not read: %s", path, err)

    return SshKey(path, KeyFormat.OPENSSH_PRIVATE, password=password,
                  has_password=container.encrypted, key_type=container.key_type,
                  public_blob=container.public_blob, comment=comment)

def _pem_private_key(path: str, text: str, password: Optional[str]) -> SshKey:
    key_data = get_privkey_data(text, password)
    key = SshKey(path, KeyFormat.OPENSSH_PRIVATE, password=password,
                 has_password=key_data["encrypted"])

    if key_data["pub"]:
        line = parse_public_key_line(key_data["pub"])
        key.key_type, key.public_blob, key.comment = line.key_type, line.blob, line.comment

    return key

def _ppk_key(path: str, text: str, password: Optional[str]) -> SshKey:
    ppk = read_ppk(text)
    return SshKey(path, KeyFormat.PPK, password=password, has_password=ppk.encrypted,
                  key_type=ppk.algorithm, public_blob=ppk.public_blob, comment=ppk.comment)

def convert(key: SshKey, to_openssh: bool = True) -> SshKey:
    """Converts key to the OpenSSH format (to_openssh) or to the PuTTY format.
    Converted files are written next to the original, which is left in
    place; existing files are never overwritten. Returns the key loaded from
    the new file: the public key for OpenSSH, the .ppk for PuTTY. A key
    already in the requested format is returned as it is.

    Raises KeyConversionError if the key can't be converted."""

    if to_openssh:
        return _ppk_to_openssh(key) if key.is_ppk else key

    if key.is_ppk:
        return key

    source = key.private_key if key.is_public else key
    if source is None:
        raise KeyConversionError(f"{key.absolute_path} has no private key to convert")

    return _openssh_to_ppk(source)

def _existing_target(target: str, public_blob: Optional[bytes], password: Optional[str]) -> SshKey:
    """A conversion target that already exists is accepted only if it holds
    the same key, i.e. the key was converted before."""

    try:
        existing = from_path(target, password)
    except KeyParseError as err:
        raise KeyConversionError(f"{target} exists and is not a key") from err

    if public_blob is None or existing.public_blob != public_blob:
        raise KeyConversionError(f"{target} exists and holds a different key")

    return existing

def _ppk_to_openssh(key: SshKey) -> SshKey:
    target = private_key_path(key.absolute_path)
    public_target = public_key_path(target)

    if os.path.exists(public_target):
        return _existing_target(public_target, key.public_blob, key.password)
    if os.path.exists(target):
        raise KeyConversionError(f"{target} exists, not overwriting it")

    try:
        ppk = read_ppk(_read_key_file(key.absolute_path))
        fields = ppk_to_openssh_fields(ppk, ppk.decrypt(key.password))
        private_data = write_openssh_private_key(ppk.public_blob, fields)
        if key.password:
            private_data = _encrypt_openssh(private_data, key.password)
    except (KeyParseError, ValueError) as err:
        raise KeyConversionError(f"cannot convert {key.absolute_path}: {err}") from err

    converted = SshKey(public_target, KeyFormat.OPENSSH_PUBLIC, key_type=ppk.algorithm,
                       public_blob=ppk.public_blob, comment=ppk.comment)
    write_private_file(target, private_data)
    write_private_file(public_target, (converted.openssh_public + "\n").encode("utf-8"), mode=0o644)
    logging.info("Converted %s to OpenSSH format at %s", key.absolute_path, target)

    return from_path(public_target, key.password)

def _encrypt_openssh(private_data: bytes, password: str) -> bytes:
    try:
        private = serialization.load_ssh_private_key(private_data, password=None)
        return private.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.OpenSSH,
                                     serialization.BestAvailableEncryption(password.encode("utf-8")))
    except UnsupportedAlgorithm as err:
        raise KeyConversionError(f"cannot encrypt converted key: {err}") from err

def _decrypted_fields(key: SshKey) -> List[bytes]:
    """Field list of an OpenSSH or PEM private key, decrypting it with the
    key's password when needed."""

    text = _read_key_file(key.absolute_path)
    if OPENSSH_BEGIN in text:
        container = read_openssh_private_key(text)
        if not container.encrypted:
            return private_fields(container)

    password = key.password.encode("utf-8") if key.password else None
    try:
        if OPENSSH_BEGIN in text:
            private = serialization.load_ssh_private_key(text.encode("utf-8"), password=password)
        else:
            private = serialization.load_pem_private_key(text.encode("utf-8"), password=password)
        plain = private.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.OpenSSH,
                                      serialization.NoEncryption())
    except (TypeError, UnsupportedAlgorithm) as err:
        raise ValueError(str(err)) from err

    fields = private_fields(read_openssh_private_key(plain.decode("ascii")))
    if not fields[-1]:
        fields[-1] = key.comment.encode("utf-8")
    return fields

def _openssh_to_ppk(key: SshKey) -> SshKey:
    target = key.absolute_path + ".ppk"

    if os.path.exists(target):
        return _existing_target(target, key.public_blob, key.password)

    try:
        blobs = openssh_fields_to_ppk(_decrypted_fields(key))
        ppk_data = write_ppk(blobs["algorithm"].decode("utf-8"),
                             blobs["comment"].decode("utf-8", "replace"),
                             blobs["public"], blobs["private"], key.password)
    except (KeyParseError, ValueError) as err:
        raise KeyConversionError(f"cannot convert {key.absolute_path}: {err}") from err

    write_private_file(target, ppk_data)
    logging.info("Converted %s to PuTTY format at %s", key.absolute_path, target)

    return from_path(target, key.password)
