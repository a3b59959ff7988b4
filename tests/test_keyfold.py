#!/usr/bin/env python3
"""Keyfold tests"""

import os
import json
import pytest
from keyfold.cache import KeyCache
from keyfold.cli import main
from keyfold.disk_scanner import scan, load_identity_file
from keyfold.keychain import KeyChain
from keyfold.keys import KeyFormat
from keyfold.ledger import ProcessedPaths
from keyfold.paths import SshPaths, resolve_identity_file
from keyfold.ssh_config import identity_file_paths, split_directive


def keychain_for(ssh_dir, cache=None):
    return KeyChain(SshPaths(ssh_dir), cache if cache is not None else KeyCache())

def test_resolve_tilde_paths(ssh_dir):
    """Test tilde forms are anchored at the key directory."""
    assert resolve_identity_file("~/.ssh/foo", ssh_dir) == str(ssh_dir / "foo")
    assert resolve_identity_file('"~/.ssh/with space"', ssh_dir) == str(ssh_dir / "with space")
    assert resolve_identity_file("~/foo", ssh_dir) == str(ssh_dir / "foo")
    assert resolve_identity_file("~alice/keys/id", ssh_dir) == str(ssh_dir / "keys" / "id")
    assert resolve_identity_file("~", ssh_dir) is None
    assert resolve_identity_file("~alice", ssh_dir) is None
    assert resolve_identity_file("   ", ssh_dir) is None

def test_resolve_variables_and_relative_paths(ssh_dir, tmp_path, monkeypatch):
    """Test environment expansion, relative paths and normalization."""
    monkeypatch.setenv("KEYFOLD_TEST_DIR", str(tmp_path / "elsewhere"))
    assert resolve_identity_file("$KEYFOLD_TEST_DIR/id", ssh_dir) == str(tmp_path / "elsewhere" / "id")
    assert resolve_identity_file("${KEYFOLD_TEST_DIR}/id", ssh_dir) == str(tmp_path / "elsewhere" / "id")
    assert resolve_identity_file("id_rsa", ssh_dir) == str(ssh_dir / "id_rsa")
    assert resolve_identity_file("keys/../id_rsa", ssh_dir) == str(ssh_dir / "id_rsa")
    assert resolve_identity_file(str(tmp_path / "a" / "." / "b"), ssh_dir) == str(tmp_path / "a" / "b")
    assert resolve_identity_file("bad\0path", ssh_dir) is None

def test_split_directive():
    """Test config line tokenizing."""
    assert split_directive("  # IdentityFile ~/.ssh/x") is None
    assert split_directive("") is None
    assert split_directive("IdentityFile") is None
    assert split_directive("IdentityFile ~/.ssh/a extra") == ["IdentityFile", "~/.ssh/a"]
    assert split_directive("identityfile=~/.ssh/a") == ["identityfile", "~/.ssh/a"]
    assert split_directive('IdentityFile "~/.ssh/with space"') == ["IdentityFile", '"~/.ssh/with space"']

def test_config_scanner(ssh_dir, make_keypair):
    """Test that existing IdentityFile paths are found in file order."""
    make_keypair(ssh_dir, "id_a")
    make_keypair(ssh_dir, "with space", with_public=False)
    (ssh_dir / "config").write_text(
        "# IdentityFile ~/.ssh/commented\n"
        "\n"
        "Host example\n"
        "    IdentityFile ~/.ssh/id_a\n"
        "    IDENTITYFILE = \"~/.ssh/with space\"\n"
        "    IdentityFile ~/.ssh/missing\n"
        "    IdentityFileX ~/.ssh/id_a.pub\n"
        "    IdentityFile ~\n"
    )

    paths = list(identity_file_paths(ssh_dir / "config", ssh_dir))
    assert paths == [str(ssh_dir / "id_a"), str(ssh_dir / "with space")]

def test_config_scanner_missing_and_unreadable(ssh_dir, caplog):
    """Test that a missing or unreadable config yields nothing and does not
    raise."""
    assert not list(identity_file_paths(ssh_dir / "config", ssh_dir))

    (ssh_dir / "config").write_bytes(b"IdentityFile ~/.ssh/id\n\xff\xfe\xfa\n")
    assert not list(identity_file_paths(ssh_dir / "config", ssh_dir))
    assert "Error while parsing ssh config" in caplog.text

def test_ledger_is_case_insensitive(tmp_path):
    """Test that ledger membership ignores case and normalizes paths."""
    ledger = ProcessedPaths()
    ledger.add(tmp_path / "ID_RSA")
    assert str(tmp_path / "id_rsa") in ledger
    assert str(tmp_path / "x" / ".." / "Id_Rsa") in ledger
    assert str(tmp_path / "id_rsa.pub") not in ledger
    assert len(ledger) == 1

def test_pairing_precedence(ssh_dir, make_keypair):
    """Test that a key pair is reported once, as the public key."""
    make_keypair(ssh_dir, "id_rsa")

    keys = keychain_for(ssh_dir).get_all_keys()
    assert len(keys) == 1
    assert keys[0].format is KeyFormat.OPENSSH_PUBLIC
    assert keys[0].absolute_path == str(ssh_dir / "id_rsa.pub")
    assert keys[0].private_key.absolute_path == str(ssh_dir / "id_rsa")
    assert keys[0].private_key.format is KeyFormat.OPENSSH_PRIVATE

def test_public_key_without_private_key(ssh_dir, make_keypair):
    """Test that a lone .pub is reported with no private key."""
    make_keypair(ssh_dir, "id_lone")
    os.unlink(ssh_dir / "id_lone")

    keys = keychain_for(ssh_dir).get_all_keys()
    assert len(keys) == 1
    assert keys[0].private_key is None
    assert keys[0].has_password is False

def test_standalone_private_key(ssh_dir, make_keypair):
    """Test that a private key without .pub is reported on its own."""
    make_keypair(ssh_dir, "id_ed25519", with_public=False)

    keys = keychain_for(ssh_dir).get_all_keys()
    assert [k.absolute_path for k in keys] == [str(ssh_dir / "id_ed25519")]
    assert keys[0].format is KeyFormat.OPENSSH_PRIVATE

def test_reserved_filenames_excluded(ssh_dir, make_keypair):
    """Test that config, known_hosts and authorized_keys are never keys."""
    make_keypair(ssh_dir, "scratch")
    public_line = (ssh_dir / "scratch.pub").read_text()
    for name in ("scratch", "scratch.pub"):
        os.unlink(ssh_dir / name)

    (ssh_dir / "config").write_text("Host *\n    User me\n")
    (ssh_dir / "known_hosts").write_text(f"example.com {public_line}")
    (ssh_dir / "authorized_keys").write_text(public_line)

    assert not keychain_for(ssh_dir).get_all_keys(load_from_disk=True)

def test_unparsable_files_are_skipped(ssh_dir, make_keypair, caplog):
    """Test that junk files and broken .pub files don't stop the scan."""
    make_keypair(ssh_dir, "id_good")
    (ssh_dir / "notes.txt").write_text("not a key\n")
    (ssh_dir / "broken.pub").write_text("ssh-ed25519 !!!!\n")
    (ssh_dir / "blob").write_bytes(os.urandom(512))

    keys = keychain_for(ssh_dir).get_all_keys()
    assert [k.absolute_path for k in keys] == [str(ssh_dir / "id_good.pub")]
    assert "broken.pub" in caplog.text

def test_no_duplicate_paths(ssh_dir, tmp_path, make_keypair, make_ppk):
    """Test that keys referenced several ways are reported once."""
    outside = tmp_path / "outside"
    outside.mkdir()
    make_keypair(ssh_dir, "id_a")
    make_keypair(ssh_dir, "id_b")
    make_keypair(ssh_dir, "id_c", with_public=False)
    make_keypair(outside, "id_d")
    make_ppk(ssh_dir, "putty.ppk")
    (ssh_dir / "config").write_text(
        "IdentityFile ~/.ssh/id_a\n"
        "IdentityFile ~/.ssh/id_b.pub\n"
        "IdentityFile ~/.ssh/ID_C\n"
        f"IdentityFile {outside}/id_d\n"
        f"IdentityFile {outside}/id_d\n"
        "IdentityFile ~/.ssh/nothing_here\n"
    )

    keys = keychain_for(ssh_dir).get_all_keys(load_from_disk=True)
    paths = [k.absolute_path for k in keys]
    assert len(paths) == len(set(p.lower() for p in paths))
    assert set(paths) == {str(ssh_dir / "id_a.pub"), str(ssh_dir / "id_b.pub"), str(ssh_dir / "id_c"),
                          str(outside / "id_d.pub"), str(ssh_dir / "putty.ppk")}

def test_config_keys_come_before_directory_keys(ssh_dir, make_keypair):
    """Test ordering: config-referenced keys, then the directory."""
    make_keypair(ssh_dir, "id_a")
    make_keypair(ssh_dir, "id_z")
    (ssh_dir / "config").write_text("IdentityFile ~/.ssh/id_z\n")

    keys = keychain_for(ssh_dir).get_all_keys()
    assert [k.filename for k in keys] == ["id_z.pub", "id_a.pub"]

def test_load_identity_file_falls_back_to_private_key(ssh_dir, make_keypair):
    """Test that a broken .pub next to a configured private key falls back
    to the private key itself."""
    make_keypair(ssh_dir, "id_x")
    (ssh_dir / "id_x.pub").write_text("garbage\n")
    ledger = ProcessedPaths()

    key = load_identity_file(str(ssh_dir / "id_x"), ledger)
    assert key.absolute_path == str(ssh_dir / "id_x")
    assert str(ssh_dir / "id_x") in ledger
    assert str(ssh_dir / "id_x.pub") in ledger

def test_disk_scan_respects_ledger(ssh_dir, make_keypair):
    """Test that the disk scanner skips paths already reported."""
    make_keypair(ssh_dir, "id_a")
    make_keypair(ssh_dir, "id_b")
    ledger = ProcessedPaths()
    ledger.add(ssh_dir / "id_a.pub")

    keys = list(scan(SshPaths(ssh_dir), ledger=ledger))
    assert [k.filename for k in keys] == ["id_b.pub"]
    assert str(ssh_dir / "id_b") in ledger

def test_cache_first(ssh_dir, make_keypair):
    """Test that cached keys are reported even when their file is gone, and
    that the directory is not searched when the cache has records."""
    make_keypair(ssh_dir, "id_on_disk")
    missing = str(ssh_dir / "gone.pub")
    cache = KeyCache()
    cache.add({"absolute_path": missing, "password": None, "format": "OpenSshPublic"})

    keys = keychain_for(ssh_dir, cache).get_all_keys()
    assert [k.absolute_path for k in keys] == [missing]
    assert keys[0].format is KeyFormat.OPENSSH_PUBLIC

def test_cached_private_key_superseded_by_public_key(ssh_dir, make_keypair):
    """Test that a cached private key whose .pub exists is reported as the
    public key."""
    make_keypair(ssh_dir, "id_pair")
    cache = KeyCache()
    cache.add({"absolute_path": str(ssh_dir / "id_pair"), "password": None, "format": "OpenSshPrivate"})
    cache.add({"absolute_path": str(ssh_dir / "id_pair.pub"), "password": None, "format": "OpenSshPublic"})

    keys = keychain_for(ssh_dir, cache).get_all_keys()
    assert [k.absolute_path for k in keys] == [str(ssh_dir / "id_pair.pub")]
    assert keys[0].private_key.absolute_path == str(ssh_dir / "id_pair")

def test_cached_private_key_kept_when_public_key_is_broken(ssh_dir, make_keypair):
    """Test that a cached private key is reported as it is when its .pub
    can't be read."""
    make_keypair(ssh_dir, "id_p")
    (ssh_dir / "id_p.pub").write_text("garbage\n")
    cache = KeyCache()
    cache.add({"absolute_path": str(ssh_dir / "id_p"), "password": None, "format": "OpenSshPrivate"})

    keys = keychain_for(ssh_dir, cache).get_all_keys()
    assert [k.filename for k in keys] == ["id_p"]
    assert keys[0].format is KeyFormat.OPENSSH_PRIVATE

def test_cache_is_populated(ssh_dir, tmp_path, make_keypair, make_encrypted_key):
    """Test that every reported key gets a cache record that survives a
    reload."""
    make_keypair(ssh_dir, "id_a")
    make_encrypted_key(ssh_dir, "id_locked")
    cache_file = tmp_path / "cache.json"

    keys = keychain_for(ssh_dir, KeyCache(cache_file)).get_all_keys()
    reloaded = KeyCache(cache_file)
    assert len(reloaded) == len(keys) == 2
    assert reloaded.find_by_path(str(ssh_dir / "id_a.pub"))["format"] == "OpenSshPublic"
    assert reloaded.find_by_path(str(ssh_dir / "id_locked"))["format"] == "OpenSshPrivate"

    # Second run comes from the cache and writes nothing
    again = keychain_for(ssh_dir, reloaded).get_all_keys()
    assert [k.absolute_path for k in again] == [k.absolute_path for k in keys]
    assert reloaded.changes == 0

def test_cached_password_is_applied(ssh_dir, make_encrypted_key):
    """Test that a stored password replaces the in-memory one."""
    make_encrypted_key(ssh_dir, "id_locked")
    cache = KeyCache()
    cache.add({"absolute_path": str(ssh_dir / "id_locked"), "password": "hunter2", "format": "OpenSshPrivate"})
    (ssh_dir / "config").write_text("IdentityFile ~/.ssh/id_locked\n")

    keys = keychain_for(ssh_dir, cache).get_all_keys(load_from_disk=True)
    assert len(keys) == 1
    assert keys[0].password == "hunter2"
    assert keys[0].has_password

def test_password_purge_idempotence(ssh_dir, tmp_path, make_encrypted_key, make_keypair):
    """Test that purging stores the empty sentinel and that a second purge
    changes nothing."""
    make_encrypted_key(ssh_dir, "id_locked")
    make_keypair(ssh_dir, "id_open", with_public=False)
    cache_file = tmp_path / "cache.json"
    cache = KeyCache(cache_file)
    cache.add({"absolute_path": str(ssh_dir / "id_locked"), "password": "hunter2", "format": "OpenSshPrivate"})
    cache.save()

    first = keychain_for(ssh_dir, cache).get_all_keys(load_from_disk=True, purge_passwords=True)
    by_name = {k.filename: k for k in first}
    assert by_name["id_locked"].password == ""
    assert by_name["id_open"].password is None
    assert KeyCache(cache_file).find_by_path(str(ssh_dir / "id_locked"))["password"] == ""

    saves = cache.changes
    second = keychain_for(ssh_dir, cache).get_all_keys(load_from_disk=True, purge_passwords=True)
    assert {k.filename: k.password for k in second} == {"id_locked": "", "id_open": None}
    assert cache.find_by_path(str(ssh_dir / "id_locked"))["password"] == ""
    assert cache.changes == saves

def test_purge_applies_to_new_records(ssh_dir, tmp_path, make_encrypted_key):
    """Test that a key first seen during a purge run is cached with the
    empty sentinel, not left unknown."""
    make_encrypted_key(ssh_dir, "id_new")
    cache_file = tmp_path / "cache.json"

    keys = keychain_for(ssh_dir, KeyCache(cache_file)).get_all_keys(purge_passwords=True)
    assert [k.password for k in keys] == [""]
    assert KeyCache(cache_file).find_by_path(str(ssh_dir / "id_new"))["password"] == ""

def test_security_keys_are_reported(ssh_dir, make_security_key):
    """Test that FIDO keys are paired like any other key, and reported on
    their own without a .pub."""
    make_security_key(ssh_dir, "id_sk")
    make_security_key(ssh_dir, "id_sk_alone", with_public=False)

    keys = keychain_for(ssh_dir).get_all_keys()
    assert [k.filename for k in keys] == ["id_sk.pub", "id_sk_alone"]
    assert keys[0].private_key.absolute_path == str(ssh_dir / "id_sk")

def test_ppk_auto_convert(ssh_dir, make_ppk):
    """Test that PuTTY keys are converted when the setting is on."""
    make_ppk(ssh_dir, "putty.ppk")
    cache = KeyCache()
    cache.convert_ppk_automatically = True

    keys = keychain_for(ssh_dir, cache).get_all_keys()
    assert len(keys) == 1
    assert keys[0].format is KeyFormat.OPENSSH_PUBLIC
    assert keys[0].absolute_path == str(ssh_dir / "putty.pub")
    assert keys[0].private_key.absolute_path == str(ssh_dir / "putty")
    assert cache.find_by_path(str(ssh_dir / "putty.pub"))["format"] == "OpenSshPublic"

def test_ppk_without_conversion(ssh_dir, make_ppk):
    """Test that PuTTY keys are reported as they are when conversion is
    off."""
    make_ppk(ssh_dir, "putty.ppk")

    keys = keychain_for(ssh_dir).get_all_keys()
    assert len(keys) == 1
    assert keys[0].format is KeyFormat.PPK
    assert not (ssh_dir / "putty.pub").exists()

def test_enumeration_is_lazy(ssh_dir, make_keypair, monkeypatch):
    """Test that stopping after the first key leaves the other sources
    untouched."""
    make_keypair(ssh_dir, "id_a")
    cache = KeyCache()
    cache.add({"absolute_path": str(ssh_dir / "id_a.pub"), "password": None, "format": "OpenSshPublic"})

    def fail(*args):
        raise AssertionError(f"config scanned: {args}")

    monkeypatch.setattr("keyfold.keychain.identity_file_paths", fail)
    keys = keychain_for(ssh_dir, cache).get_all_keys_yield()
    assert next(keys).absolute_path == str(ssh_dir / "id_a.pub")
    keys.close()

def test_cache_save_failure_propagates(ssh_dir, make_keypair):
    """Test that a failing cache commit reaches the caller."""

    class FailingCache(KeyCache):
        """Cache whose commits always fail"""
        def save(self):
            raise OSError("disk full")

    make_keypair(ssh_dir, "id_a")
    with pytest.raises(OSError):
        keychain_for(ssh_dir, FailingCache()).get_all_keys()

def test_cli(ssh_dir, tmp_path, make_keypair):
    """Test the command line entry point end to end."""
    make_keypair(ssh_dir, "id_a")
    out_file = tmp_path / "keys.json"

    assert main(["-d", str(ssh_dir), "-i", str(tmp_path / "cache.json"), "-o", str(out_file)]) == 0

    with open(out_file, "r", encoding="utf-8") as inf:
        data = json.load(inf)

    assert len(data) == 1
    assert data[0]["path"] == str(ssh_dir / "id_a.pub")
    assert data[0]["private_key"] == str(ssh_dir / "id_a")
    assert data[0]["fingerprint"].startswith("SHA256:")
    assert KeyCache(tmp_path / "cache.json").find_by_path(str(ssh_dir / "id_a.pub")) is not None
