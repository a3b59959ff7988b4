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
"""Key model for Keyfold"""

import os
import base64
from enum import Enum
from typing import Optional
from .types import KeyRecord
from .keyfold_utility import sha256_fingerprint

__all__ = ["KeyFormat", "SshKey", "KeyParseError", "KeyConversionError"]


class KeyParseError(ValueError):
    """Raised when a file does not contain a key we can read."""


class KeyConversionError(ValueError):
    """Raised when a key cannot be converted to the requested format."""


class KeyFormat(Enum):
    """On-disk format of a key. This is the only tag pairing logic looks at."""
    OPENSSH_PUBLIC = "OpenSshPublic"
    OPENSSH_PRIVATE = "OpenSshPrivate"
    PPK = "Ppk"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "KeyFormat":
        """Map a stored value back to a format, UNKNOWN if unrecognised."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class SshKey():
    """A key found on disk, in the ssh config, or in the cache.

    ``password`` is None when the key has no passphrase (or it is unknown) and
    the empty string when the key has a passphrase that is deliberately not
    stored. ``private_key`` is only ever set on public keys, once, when the
    key is built."""

    def __init__(self, absolute_path: str, key_format: KeyFormat,
                 password: Optional[str] = None, has_password: bool = False,
                 key_type: Optional[str] = None, public_blob: Optional[bytes] = None,
                 comment: str = "", private_key: Optional["SshKey"] = None):
        self.absolute_path = absolute_path
        self.format = key_format
        self.password = password
        self.key_type = key_type
        self.public_blob = public_blob
        self.comment = comment
        self.private_key = private_key if key_format is KeyFormat.OPENSSH_PUBLIC else None
        self._has_password = has_password

    @classmethod
    def from_record(cls, record: KeyRecord) -> "SshKey":
        """Bare key rebuilt from a cache record whose file could not be read."""
        return cls(record["absolute_path"], KeyFormat.parse(record.get("format")),
                   password=record.get("password"),
                   has_password=record.get("password") is not None)

    def to_record(self) -> KeyRecord:
        """Cache projection of this key."""
        return {"absolute_path": self.absolute_path, "password": self.password,
                "format": self.format.value}

    @property
    def has_password(self) -> bool:
        """Whether the key material is passphrase protected."""
        if self.is_public:
            return self.private_key is not None and self.private_key.has_password
        return self._has_password

    @property
    def is_public(self) -> bool:
        return self.format is KeyFormat.OPENSSH_PUBLIC

    @property
    def is_ppk(self) -> bool:
        return self.format is KeyFormat.PPK

    @property
    def filename(self) -> str:
        return os.path.basename(self.absolute_path)

    @property
    def fingerprint(self) -> Optional[str]:
        """SHA256 fingerprint in the form printed by ssh-keygen -l."""
        if self.public_blob is None:
            return None
        return sha256_fingerprint(self.public_blob)

    @property
    def openssh_public(self) -> Optional[str]:
        """The key as a single authorized_keys style line."""
        if self.public_blob is None or self.key_type is None:
            return None
        line = f"{self.key_type} {base64.b64encode(self.public_blob).decode('ascii')}"
        if self.comment:
            line += f" {self.comment}"
        return line

    def __repr__(self) -> str:
        return f"SshKey({self.absolute_path!r}, {self.format.value})"
