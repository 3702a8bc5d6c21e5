# -*- coding: utf-8 -*-
"""
Cryptographic primitives of the backup format.

Original iphone-dataprotection code derived from:
https://code.google.com/p/iphone-dataprotection/
Original License: https://opensource.org/licenses/BSD-3-Clause
"""

import logging
import struct

import Crypto.Cipher.AES
import Crypto.Hash.SHA1
import Crypto.Hash.SHA256
import Crypto.Protocol.KDF

from .constants import CBC_BLOCK_SIZE, CHUNK_SIZE
from .errors import UnwrapIntegrityError

logger = logging.getLogger(__name__)

# PBKDF2 Implementation Selection
_FASTPBKDF2_AVAILABLE = False
try:
    # Prefer a fast, pure C implementation:
    from fastpbkdf2 import pbkdf2_hmac
    _FASTPBKDF2_AVAILABLE = True
except ImportError:
    # Otherwise, use pycryptodome - wrapped to look like the standard library method signature.
    _HASH_FNS = {"sha1": Crypto.Hash.SHA1, "sha256": Crypto.Hash.SHA256}

    def pbkdf2_hmac(hash_name, password, salt, iterations, dklen=None):
        return Crypto.Protocol.KDF.PBKDF2(password, salt, dklen, count=iterations,
                                          hmac_hash_module=_HASH_FNS[hash_name])

KEY_SIZE = 32  # AES-256 everywhere.
_ZERO_IV = b"\x00" * CBC_BLOCK_SIZE
_KEYWRAP_IV = 0xA6A6A6A6A6A6A6A6


def derive_passcode_key(password, keybag):
    """
    Derive the key-encryption key from the backup password.

    Two PBKDF2 rounds: HMAC-SHA256 over the password with DPSL/DPIC, then
    HMAC-SHA1 over that result with SALT/ITER. This is slow by construction
    (iteration counts run into the millions) and blocks the calling thread.
    """
    if not isinstance(password, bytes):
        password = password.encode("utf-8")
    logger.info("Deriving passcode key (DPIC=%d, ITER=%d, fastpbkdf2=%s)...",
                keybag.double_protection_iterations, keybag.iterations, _FASTPBKDF2_AVAILABLE)
    passphrase_round1 = pbkdf2_hmac("sha256", password, keybag.double_protection_salt,
                                    keybag.double_protection_iterations, KEY_SIZE)
    return pbkdf2_hmac("sha1", passphrase_round1, keybag.salt, keybag.iterations, KEY_SIZE)


def _unpack64bit(s):
    return struct.unpack(">Q", s)[0]


def _pack64bit(s):
    return struct.pack(">Q", s)


def _check_kek(kek):
    if len(kek) != KEY_SIZE:
        raise ValueError(f"AES-256 key must be {KEY_SIZE} bytes, got {len(kek)}.")


def aes_unwrap(wrapped, kek):
    """RFC 3394 key unwrap.

    :raises UnwrapIntegrityError: if the recovered integrity value is not
        A6A6A6A6A6A6A6A6, which almost always means a wrong password.
    """
    _check_kek(kek)
    if len(wrapped) < 24 or len(wrapped) % 8 != 0:
        raise ValueError(f"Wrapped key has invalid length {len(wrapped)}. Must be a multiple of 8 and >= 24.")

    C = [_unpack64bit(wrapped[i * 8:i * 8 + 8]) for i in range(len(wrapped) // 8)]
    n = len(C) - 1
    A = C[0]
    R = [0] + C[1:]

    cipher = Crypto.Cipher.AES.new(kek, Crypto.Cipher.AES.MODE_ECB)
    for j in reversed(range(0, 6)):
        for i in reversed(range(1, n + 1)):
            B = cipher.decrypt(_pack64bit(A ^ (n * j + i)) + _pack64bit(R[i]))
            A = _unpack64bit(B[:8])
            R[i] = _unpack64bit(B[8:])

    if A != _KEYWRAP_IV:
        raise UnwrapIntegrityError("AES key unwrap integrity check failed (wrong password or corrupted key).")
    return b"".join(map(_pack64bit, R[1:]))


def aes_wrap(key, kek):
    """RFC 3394 key wrap, the inverse of :func:`aes_unwrap`."""
    _check_kek(kek)
    if len(key) < 16 or len(key) % 8 != 0:
        raise ValueError(f"Key to wrap has invalid length {len(key)}. Must be a multiple of 8 and >= 16.")

    n = len(key) // 8
    A = _KEYWRAP_IV
    R = [0] + [_unpack64bit(key[i * 8:i * 8 + 8]) for i in range(n)]

    cipher = Crypto.Cipher.AES.new(kek, Crypto.Cipher.AES.MODE_ECB)
    for j in range(0, 6):
        for i in range(1, n + 1):
            B = cipher.encrypt(_pack64bit(A) + _pack64bit(R[i]))
            A = _unpack64bit(B[:8]) ^ (n * j + i)
            R[i] = _unpack64bit(B[8:])
    return _pack64bit(A) + b"".join(map(_pack64bit, R[1:]))


def read_chunks(fileobj, chunk_size=CHUNK_SIZE):
    """Iterate over a binary file object in ``chunk_size`` pieces."""
    while True:
        data = fileobj.read(chunk_size)
        if not data:
            break
        yield data


def decrypt_stream(key, chunks):
    """
    Decrypt an iterable of ciphertext chunks with AES-256-CBC and a zero IV.

    Chunks may have any size; they are re-aligned to the block size. Nothing
    is authenticated: a wrong key yields garbage, not an error. Only a
    trailing partial block raises ``ValueError``.
    """
    _check_kek(key)
    cipher = Crypto.Cipher.AES.new(key, Crypto.Cipher.AES.MODE_CBC, iv=_ZERO_IV)
    return _decrypt_chunks(cipher, chunks)


def _decrypt_chunks(cipher, chunks):
    pending = b""
    for chunk in chunks:
        pending += chunk
        aligned = len(pending) - len(pending) % CBC_BLOCK_SIZE
        if aligned:
            yield cipher.decrypt(pending[:aligned])
            pending = pending[aligned:]
    if pending:
        raise ValueError(f"Ciphertext is not a multiple of {CBC_BLOCK_SIZE} bytes ({len(pending)} trailing bytes).")


def truncate_stream(chunks, size):
    """Yield at most ``size`` bytes from ``chunks``, dropping block padding."""
    remaining = size
    for chunk in chunks:
        if remaining <= 0:
            break
        if len(chunk) > remaining:
            chunk = chunk[:remaining]
        remaining -= len(chunk)
        yield chunk
    if remaining > 0:
        logger.warning("Decrypted stream ended %d bytes short of its declared size %d.", remaining, size)


def remove_padding(data, blocksize=CBC_BLOCK_SIZE):
    """Removes PKCS#7 padding; data without valid padding is returned as is."""
    if not data:
        return b""
    padding_len = data[-1]
    if 1 <= padding_len <= blocksize and data.endswith(bytes([padding_len]) * padding_len):
        return data[:-padding_len]
    return data


def strip_padding_stream(chunks, blocksize=CBC_BLOCK_SIZE):
    """Streaming :func:`remove_padding`: holds back the final block until the end."""
    held = b""
    for chunk in chunks:
        held += chunk
        if len(held) > blocksize:
            yield held[:-blocksize]
            held = held[-blocksize:]
    tail = remove_padding(held, blocksize)
    if tail:
        yield tail
