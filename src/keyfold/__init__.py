"""
Finds the SSH keys in the key directory and in the IdentityFile directives of the ssh config, reports each key pair once, and keeps a cache of the keys found in step with the disk.
"""
from .keychain import KeyChain
from .cache import KeyCache
from .paths import SshPaths, resolve_identity_file
from .keys import SshKey, KeyFormat, KeyParseError, KeyConversionError

__all__ = ["KeyChain", "KeyCache", "SshPaths", "resolve_identity_file",
           "SshKey", "KeyFormat", "KeyParseError", "KeyConversionError"]
