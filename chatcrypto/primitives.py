"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
hybrid key-management scheme: RSA-OAEP for wrapping per-conversation keys and
AES-256-GCM for message confidentiality.
"""

import os
import hmac
import base64
import binascii
from typing import Tuple
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
SYMMETRIC_KEY_BYTES = 32
NONCE_BYTES = 12


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    user_message = "A cryptographic error occurred."


class KeyNotFound(CryptoError):
    """No private key is stored for the identity on this device"""
    user_message = (
        "Your private key is not found on this device. You cannot decrypt messages. "
        "Try signing in on your original device, or start a new chat."
    )


class KeyCorrupt(CryptoError):
    """The stored private key could not be read and has been purged"""
    user_message = (
        "Your local key was corrupted and has been removed from this device. "
        "A new chat may be required."
    )


class KeyMismatch(CryptoError):
    """A wrapped key could not be opened with the given private key"""
    user_message = "Cannot establish a secure channel for this chat."


class DecryptFailure(CryptoError):
    """Authenticated decryption failed (wrong key, corruption or tampering)"""
    user_message = "Could not decrypt message."


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


def b64encode(data: bytes) -> str:
    """Encode bytes as standard base64 text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Decode standard base64 text.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise ValueError(f"Invalid base64 data: {e}")


def generate_rsa_keypair(key_size: int = RSA_KEY_SIZE) -> Tuple[RSAPrivateKey, RSAPublicKey]:
    """
    Generate an RSA keypair for key wrapping.

    Args:
        key_size: Modulus size in bits

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size)
    return private_key, private_key.public_key()


def rsa_encrypt(public_key: RSAPublicKey, data: bytes) -> bytes:
    """Encrypt a short payload with RSA-OAEP (SHA-256)"""
    return public_key.encrypt(data, _oaep())


def rsa_decrypt(private_key: RSAPrivateKey, data: bytes) -> bytes:
    """
    Decrypt an RSA-OAEP (SHA-256) payload.

    Raises:
        KeyMismatch: If the payload was not produced for this key
    """
    try:
        return private_key.decrypt(data, _oaep())
    except ValueError as e:
        raise KeyMismatch(f"RSA-OAEP decryption failed: {e}")


def generate_symmetric_key() -> bytes:
    """Generate a random 256-bit AES key"""
    return AESGCM.generate_key(bit_length=SYMMETRIC_KEY_BYTES * 8)


def aes_gcm_encrypt(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (nonce, ciphertext + tag)
    """
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data or None)
    return nonce, ciphertext


def aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt and authenticate an AES-256-GCM ciphertext.

    Raises:
        DecryptFailure: If the nonce is malformed or authentication fails
    """
    if len(nonce) != NONCE_BYTES:
        raise DecryptFailure("Invalid nonce length")
    if len(ciphertext) < 16:
        raise DecryptFailure("Ciphertext too short")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data or None)
    except (InvalidTag, ValueError) as e:
        raise DecryptFailure(f"Decryption failed: {e!r}")


def serialize_public_key(public_key: RSAPublicKey) -> str:
    """Serialize an RSA public key to SubjectPublicKeyInfo PEM text"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


def deserialize_public_key(pem: str) -> RSAPublicKey:
    """
    Deserialize SubjectPublicKeyInfo PEM text to an RSA public key.

    Raises:
        ValueError: If the data is not an RSA public key
    """
    key = serialization.load_pem_public_key(pem.encode("ascii"))
    if not isinstance(key, RSAPublicKey):
        raise ValueError("Not an RSA public key")
    return key


def serialize_private_key(private_key: RSAPrivateKey) -> bytes:
    """Serialize an RSA private key to unencrypted PKCS#8 DER bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(der: bytes) -> RSAPrivateKey:
    """
    Deserialize PKCS#8 DER bytes to an RSA private key.

    Raises:
        KeyCorrupt: If the bytes are not a valid RSA private key
    """
    try:
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyCorrupt(f"Stored private key does not deserialize: {e}")
    if not isinstance(key, RSAPrivateKey):
        raise KeyCorrupt("Stored private key is not an RSA key")
    return key


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
