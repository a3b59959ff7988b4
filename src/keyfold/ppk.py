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
"""PuTTY private key (.ppk) reader and writer.

Reads format versions 2 and 3. Encrypted version 2 files (aes256-cbc with the
SHA-1 based key derivation) can be decrypted; encrypted version 3 files use
Argon2 and can only be classified, not decrypted. Files are always written as
version 2."""

import re
import hmac
import base64
import binascii
import hashlib
import textwrap
from typing import Dict, List, Optional
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from .keyfold_utility import SshReader, pack_string

__all__ = ["PuttyKey", "read_ppk", "write_ppk", "ppk_to_openssh_fields", "openssh_fields_to_ppk"]

HEADER_PATTERN = re.compile(r"^PuTTY-User-Key-File-(\d+): (\S+)\s*$")
MAC_KEY_PREFIX = b"putty-private-key-file-mac-key"


class PuttyKey():
    """Parsed contents of a .ppk file. private_blob is still encrypted when
    the file is."""

    def __init__(self, version: int, algorithm: str, encryption: str, comment: str,
                 public_blob: bytes, private_blob: bytes, mac: str):
        self.version = version
        self.algorithm = algorithm
        self.encryption = encryption
        self.comment = comment
        self.public_blob = public_blob
        self.private_blob = private_blob
        self.mac = mac

    @property
    def encrypted(self) -> bool:
        return self.encryption != "none"

    def mac_data(self, private_plain: bytes) -> bytes:
        return (pack_string(self.algorithm.encode("utf-8")) + pack_string(self.encryption.encode("utf-8"))
                + pack_string(self.comment.encode("utf-8")) + pack_string(self.public_blob)
                + pack_string(private_plain))

    def decrypt(self, password: Optional[str] = None) -> bytes:
        """Returns the plaintext private blob after checking the file MAC.
        Raises ValueError for a wrong password, a damaged file, or an
        encryption scheme we can't handle."""

        passphrase = (password or "").encode("utf-8")

        if self.version == 2:
            private_plain = self.private_blob
            if self.encrypted:
                if self.encryption != "aes256-cbc":
                    raise ValueError(f"unsupported PuTTY encryption {self.encryption}")
                if not passphrase:
                    raise ValueError("passphrase required")
                private_plain = _aes_cbc(_v2_cipher_key(passphrase), self.private_blob, decrypt=True)
            mac_key = hashlib.sha1(MAC_KEY_PREFIX + (passphrase if self.encrypted else b"")).digest()
            expected = hmac.new(mac_key, self.mac_data(private_plain), hashlib.sha1).hexdigest()
        elif self.version == 3:
            if self.encrypted:
                raise ValueError("encrypted PuTTY version 3 keys need Argon2, which is unsupported")
            private_plain = self.private_blob
            expected = hmac.new(b"", self.mac_data(private_plain), hashlib.sha256).hexdigest()
        else:
            raise ValueError(f"unsupported PuTTY key version {self.version}")

        if not hmac.compare_digest(expected, self.mac.lower()):
            raise ValueError("MAC mismatch: wrong passphrase or damaged key file")

        return private_plain


def _v2_cipher_key(passphrase: bytes) -> bytes:
    return (hashlib.sha1(b"\0\0\0\0" + passphrase).digest()
            + hashlib.sha1(b"\0\0\0\1" + passphrase).digest())[:32]

def _aes_cbc(key: bytes, data: bytes, decrypt: bool) -> bytes:
    if len(data) % 16:
        raise ValueError("encrypted blob is not a whole number of blocks")
    cipher = Cipher(algorithms.AES(key), modes.CBC(b"\0" * 16))
    context = cipher.decryptor() if decrypt else cipher.encryptor()
    return context.update(data) + context.finalize()

def read_ppk(text: str) -> PuttyKey:
    """Parses the text of a .ppk file. Raises ValueError if it isn't one."""

    lines = text.splitlines()
    if not lines:
        raise ValueError("empty file")

    match = HEADER_PATTERN.match(lines[0].strip())
    if not match:
        raise ValueError("not a PuTTY key file")

    headers: Dict[str, str] = {}
    blobs: Dict[str, bytes] = {}
    index = 1
    while index < len(lines):
        line = lines[index].strip()
        index += 1
        if not line:
            continue
        name, sep, value = line.partition(":")
        value = value.strip()
        if not sep:
            raise ValueError(f"malformed PuTTY header line {index}")
        if name.endswith("-Lines"):
            count = int(value)
            chunk = "".join(part.strip() for part in lines[index:index + count])
            if len(lines[index:index + count]) != count:
                raise ValueError(f"{name} runs past the end of the file")
            index += count
            try:
                blobs[name[:-len("-Lines")]] = base64.b64decode(chunk, validate=True)
            except binascii.Error as err:
                raise ValueError(f"bad base64 in {name}") from err
        else:
            headers[name] = value

    for required in ("Encryption", "Private-MAC"):
        if required not in headers:
            raise ValueError(f"missing {required} header")
    if "Public" not in blobs or "Private" not in blobs:
        raise ValueError("missing key material")

    if SshReader(blobs["Public"]).read_text() != match.group(2):
        raise ValueError("key type does not match public blob")

    return PuttyKey(int(match.group(1)), match.group(2), headers["Encryption"],
                    headers.get("Comment", ""), blobs["Public"], blobs["Private"],
                    headers["Private-MAC"])

def write_ppk(algorithm: str, comment: str, public_blob: bytes, private_blob: bytes,
              password: Optional[str] = None) -> bytes:
    """Serializes a version 2 .ppk file, encrypted with aes256-cbc when a
    non-empty password is given."""

    passphrase = (password or "").encode("utf-8")
    encryption = "aes256-cbc" if passphrase else "none"

    if passphrase:
        # PuTTY pads with bytes from the SHA-1 of the blob
        padding = -len(private_blob) % 16
        private_blob += hashlib.sha1(private_blob).digest()[:padding]

    key = PuttyKey(2, algorithm, encryption, comment, public_blob, private_blob, "")
    mac_key = hashlib.sha1(MAC_KEY_PREFIX + passphrase).digest()
    mac = hmac.new(mac_key, key.mac_data(private_blob), hashlib.sha1).hexdigest()

    if passphrase:
        private_blob = _aes_cbc(_v2_cipher_key(passphrase), private_blob, decrypt=False)

    public_lines = textwrap.wrap(base64.b64encode(public_blob).decode("ascii"), width=64)
    private_lines = textwrap.wrap(base64.b64encode(private_blob).decode("ascii"), width=64)
    out = [f"PuTTY-User-Key-File-2: {algorithm}",
           f"Encryption: {encryption}",
           f"Comment: {comment}",
           f"Public-Lines: {len(public_lines)}", *public_lines,
           f"Private-Lines: {len(private_lines)}", *private_lines,
           f"Private-MAC: {mac}"]
    return ("\n".join(out) + "\n").encode("utf-8")

def ppk_to_openssh_fields(key: PuttyKey, private_plain: bytes) -> List[bytes]:
    """Rearranges PuTTY public and private blobs into the field list of an
    openssh-key-v1 private section (see openssh.private_fields)."""

    public = SshReader(key.public_blob)
    private = SshReader(private_plain)
    key_type = public.read_string()

    if key_type == b"ssh-rsa":
        e, n = public.read_string(), public.read_string()
        d, p, q, iqmp = (private.read_string() for _ in range(4))
        fields = [n, e, d, iqmp, p, q]
    elif key_type == b"ssh-dss":
        fields = [public.read_string() for _ in range(4)] + [private.read_string()]
    elif key_type.startswith(b"ecdsa-sha2-"):
        fields = [public.read_string(), public.read_string(), private.read_string()]
    elif key_type == b"ssh-ed25519":
        pk, sk = public.read_string(), private.read_string()
        fields = [pk, sk + pk]
    else:
        raise ValueError(f"unsupported key type {key_type.decode('utf-8', 'replace')}")

    return [key_type] + fields + [key.comment.encode("utf-8")]

def openssh_fields_to_ppk(fields: List[bytes]) -> Dict[str, bytes]:
    """Inverse of ppk_to_openssh_fields. Returns the public and private
    blobs for a PuTTY key."""

    key_type, comment = fields[0], fields[-1]
    values = fields[1:-1]

    if key_type == b"ssh-rsa":
        n, e, d, iqmp, p, q = values
        public, private = [e, n], [d, p, q, iqmp]
    elif key_type == b"ssh-dss":
        public, private = values[:4], values[4:]
    elif key_type.startswith(b"ecdsa-sha2-"):
        public, private = values[:2], values[2:]
    elif key_type == b"ssh-ed25519":
        pk, sk = values
        public, private = [pk], [sk[:32]]
    else:
        raise ValueError(f"unsupported key type {key_type.decode('utf-8', 'replace')}")

    return {
        "algorithm": key_type,
        "public": pack_string(key_type) + b"".join(pack_string(v) for v in public),
        "private": b"".join(pack_string(v) for v in private),
        "comment": comment,
    }
