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
"""Utility functions and classes"""

import os
import base64
import hashlib
import struct
import tempfile
import logging
import subprocess
from pathlib import Path
from typing import Optional, Dict, Any, List
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from .types import StrPath


RESERVED_FILENAMES = frozenset({"config", "known_hosts", "authorized_keys"})


def list_files(directory: StrPath) -> List[str]:
    """Returns the sorted absolute paths of the regular files directly inside
    directory. Symlinks pointing at regular files are included. A missing
    directory has no files."""

    try:
        with os.scandir(directory) as entries:
            files = [os.path.abspath(entry.path) for entry in entries if entry.is_file()]
    except FileNotFoundError:
        return []

    return sorted(files)

def has_extension(path: StrPath, *extensions: str) -> bool:
    """Case-insensitive check of the final extension of path."""
    return os.path.splitext(str(path))[1].lower() in extensions

def is_reserved_filename(path: StrPath) -> bool:
    """True for ssh files that are never keys (config, known_hosts, authorized_keys)."""
    return os.path.basename(str(path)).lower() in RESERVED_FILENAMES

def private_key_path(path: StrPath) -> str:
    """Path of the private key belonging to a public key: the same path with
    its final extension removed."""
    return os.path.splitext(str(path))[0]

def public_key_path(path: StrPath) -> str:
    """Path of the .pub file belonging to a private key."""
    return str(path) + ".pub"

def ppk_public_key_path(path: StrPath) -> str:
    """Path of the .pub file sitting next to a PuTTY key (.ppk replaced by .pub)."""
    root, ext = os.path.splitext(str(path))
    if ext.lower() == ".ppk":
        return root + ".pub"
    return public_key_path(path)

def sha256_fingerprint(blob: bytes) -> str:
    """Returns the fingerprint of a public key blob in the same form as
    ssh-keygen -l (SHA256:, unpadded base64)."""
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii")
    return "SHA256:" + digest.rstrip("=")

def pack_uint32(value: int) -> bytes:
    return struct.pack(">I", value)

def pack_string(value: bytes) -> bytes:
    """SSH wire format string: uint32 length followed by the bytes."""
    return struct.pack(">I", len(value)) + value


class SshReader():
    """Sequential reader for SSH wire format buffers. Raises ValueError when
    the buffer is shorter than a field claims to be."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def read_bytes(self, length: int) -> bytes:
        if length < 0 or self.offset + length > len(self.data):
            raise ValueError("truncated SSH data")
        chunk = self.data[self.offset:self.offset + length]
        self.offset += length
        return chunk

    def read_uint32(self) -> int:
        return struct.unpack(">I", self.read_bytes(4))[0]

    def read_string(self) -> bytes:
        return self.read_bytes(self.read_uint32())

    def read_text(self) -> str:
        return self.read_string().decode("utf-8")

    def remaining(self) -> bytes:
        return self.data[self.offset:]


def _public_line_with_password(privkey_string: str, password: str) -> Optional[str]:
    """OpenSSH public key line of an encrypted PEM key, or None if password
    doesn't open it."""
    try:
        private = serialization.load_pem_private_key(privkey_string.encode("utf-8"),
                                                     password=password.encode("utf-8"))
    except (ValueError, TypeError, UnsupportedAlgorithm) as err:
        logging.debug("Stored password does not open the key: %s", err)
        return None
    return private.public_key().public_bytes(serialization.Encoding.OpenSSH,
                                             serialization.PublicFormat.OpenSSH).decode("ascii")

def get_privkey_data(privkey_string: str, password: Optional[str] = None) -> Dict[str, Any]:
    """Returns a dict with the public key and encryption status of a PEM or
    PKCS8 private key, as reported by ssh-keygen. When the key is encrypted
    and no (or a wrong) password is supplied the public key is None.

    ssh-keygen refuses key files readable by others, so the key is copied to
    a private temporary file first. ssh-keygen is only ever given an empty
    passphrase; an encrypted key is opened with cryptography instead."""

    key_data: Dict[str, Any] = {"encrypted": False, "pub": None}

    with tempfile.NamedTemporaryFile(mode="w") as key_file:
        key_file.write(privkey_string)
        key_file.flush()

        keygen_process = subprocess.run(["ssh-keygen", "-P", "", "-y", "-f", key_file.name],
                                        capture_output=True, text=True, check=False)

        # ssh-keygen(1) doesn't provide informative return codes, so parse stderr
        stderr = str(keygen_process.stderr).lower()
        if keygen_process.returncode == 0:
            key_data["pub"] = keygen_process.stdout.strip()
            # Proc-Type: 4,ENCRYPTED or BEGIN ENCRYPTED PRIVATE KEY
            key_data["encrypted"] = "ENCRYPTED" in privkey_string
        elif "incorrect passphrase" in stderr or "passphrase is required" in stderr:
            key_data["encrypted"] = True
            if password:
                key_data["pub"] = _public_line_with_password(privkey_string, password)
        else:
            raise ValueError(keygen_process.stderr.strip() or "ssh-keygen rejected the key")

    return key_data

def write_private_file(path: StrPath, data: bytes, mode: int = 0o600) -> None:
    """Writes data to a new file at path with the given mode. Never replaces
    an existing file (raises FileExistsError)."""

    os.makedirs(Path(path).parent, mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, mode)
    with os.fdopen(fd, "wb") as outf:
        outf.write(data)
