#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Signing, verification and truncation of Boot Guard manifests

  A signature covers the manifest bytes in front of the key signature block,
  ``bdata[:manifest.signed_region_end]``. Supported keys::

    * RSA 2048/3072 (cryptography), RSASSA PKCS#1 v1.5
    * ECC P-224/P-256/P-384 (ecdsa SigningKey or cryptography EC key),
      deterministic ECDSA (RFC 6979)

  Example::

    >>> from bgprov import manifest, sign
    >>> bpm = manifest.disassemble(bpm_bytes)
    >>> signed = sign.sign_manifest(bpm, private_key)
    >>> sign.verify(signed[:bpm.signed_region_end], bpm.key_signature)
    True
    >>> unsigned = sign.truncate(signed, bpm.signed_region_end)

"""
import struct, hashlib

from ecdsa import SigningKey, VerifyingKey, BadSignatureError
from ecdsa.curves import NIST224p, NIST256p, NIST384p
from ecdsa.util import sigencode_strings, sigdecode_strings
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.asymmetric import padding as crypto_padding

import logging
logger = logging.getLogger(__name__)

from bgprov import errors, utility
from bgprov.element import Key, Signature, KeySignature

_CURVES = {224: NIST224p, 256: NIST256p, 384: NIST384p}

_RSA_HASHES = {
  utility.TPM_ALG_SHA1:   hashes.SHA1,
  utility.TPM_ALG_SHA256: hashes.SHA256,
  utility.TPM_ALG_SHA384: hashes.SHA384,
  utility.TPM_ALG_SHA512: hashes.SHA512,
}

_EC_HASHES = {
  utility.TPM_ALG_SHA1:   hashlib.sha1,
  utility.TPM_ALG_SHA256: hashlib.sha256,
  utility.TPM_ALG_SHA384: hashlib.sha384,
  utility.TPM_ALG_SHA512: hashlib.sha512,
}


def _private_key(private_key):
  """ returns an ecdsa SigningKey or a cryptography RSA private key """
  if isinstance(private_key, (SigningKey, rsa.RSAPrivateKey)):
    return private_key
  if isinstance(private_key, ec.EllipticCurvePrivateKey):
    der = private_key.private_bytes(serialization.Encoding.DER, serialization.PrivateFormat.PKCS8,
                                    serialization.NoEncryption())
    return SigningKey.from_der(der)
  raise errors.KeyAlgorithmMismatchError("unsupported private key type {}".format(type(private_key).__name__))


def _public_key(public_key):
  """ returns an ecdsa VerifyingKey or a cryptography RSA public key """
  if isinstance(public_key, SigningKey):
    return public_key.get_verifying_key()
  if isinstance(public_key, (VerifyingKey, rsa.RSAPublicKey)):
    return public_key
  if isinstance(public_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
    public_key = public_key.public_key()
  if isinstance(public_key, rsa.RSAPublicKey):
    return public_key
  if isinstance(public_key, ec.EllipticCurvePublicKey):
    der = public_key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return VerifyingKey.from_der(der)
  raise errors.KeyAlgorithmMismatchError("unsupported public key type {}".format(type(public_key).__name__))


def public_key_data(public_key):
  """ public key descriptor of a key

  :param public_key: public or private key, RSA or ECC
  :returns key: element.Key with algorithm, size in bits and little-endian key data

  """
  pub = _public_key(public_key)
  if isinstance(pub, rsa.RSAPublicKey):
    nums = pub.public_numbers()
    bits = pub.key_size
    data = struct.pack('<I', nums.e) + nums.n.to_bytes(bits // 8, 'little')
    return Key(utility.TPM_ALG_RSA, bits, data)
  bits = pub.curve.baselen * 8
  if bits not in _CURVES or _CURVES[bits].name != pub.curve.name:
    raise errors.UnsupportedAlgorithmError("unsupported curve {}".format(pub.curve.name))
  xy = pub.to_string()
  half = pub.curve.baselen
  return Key(utility.TPM_ALG_ECC, bits, xy[:half][::-1] + xy[half:][::-1])


def default_hash_alg(key):
  """ SHA384 for keys stronger than RSA-2048 or P-256, SHA256 otherwise """
  if key.key_alg == utility.TPM_ALG_RSA:
    return utility.TPM_ALG_SHA384 if key.key_size > 2048 else utility.TPM_ALG_SHA256
  return utility.TPM_ALG_SHA384 if key.key_size > 256 else utility.TPM_ALG_SHA256


def _sig_scheme(key):
  return utility.TPM_ALG_RSASSA if key.key_alg == utility.TPM_ALG_RSA else utility.TPM_ALG_ECDSA


def bind_key(key_signature, public_key, hash_alg=None):
  """ key signature block for a public key, signature zero filled

  Algorithm tags, sizes and the signature length come from the key, so a
  manifest carrying the result already has its final length.

  :param key_signature: current KeySignature or None, its hash algorithm is reused
  :param public_key: key that will sign
  :param hash_alg: signature hash algorithm, optional

  :returns key_signature: new KeySignature

  """
  key = public_key_data(public_key)
  if hash_alg is None:
    if key_signature is not None and key_signature.signature.hash_alg in utility.HASH_ALGS:
      hash_alg = key_signature.signature.hash_alg
    else:
      hash_alg = default_hash_alg(key)
  scheme = _sig_scheme(key)
  size = Signature.data_size(scheme, key.key_size)
  return KeySignature(key, Signature(scheme, key.key_size, utility.parse_alg(hash_alg), bytes(size)))


def sign(unsigned_prefix, private_key, bound=None, hash_alg=None):
  """ sign the to-be-signed prefix of a manifest

  :param unsigned_prefix: manifest bytes up to ``signed_region_end``
  :param private_key: RSA or ECC private key
  :param bound: KeySignature already carried by the manifest, optional.
    A populated key in it must be the signing key.
  :param hash_alg: hash algorithm, default from ``bound`` or from the key size

  :returns key_signature: new KeySignature holding key and signature

  """
  signer = _private_key(private_key)
  key = public_key_data(signer)
  if bound is not None and bound.key.populated:
    if (bound.key.key_alg, bound.key.key_size) != (key.key_alg, key.key_size):
      logger.warning("-- bound key {}/{} bits, signing key {}/{} bits".format(
        utility.alg_name(bound.key.key_alg), bound.key.key_size, utility.alg_name(key.key_alg), key.key_size))
      raise errors.KeyAlgorithmMismatchError("signing key does not match the bound key algorithm or size")
    if bound.key.data != key.data:
      raise errors.KeyAlgorithmMismatchError("signing key does not match the bound public key")
  if hash_alg is None:
    if bound is not None and bound.signature.hash_alg in utility.HASH_ALGS:
      hash_alg = bound.signature.hash_alg
    else:
      hash_alg = default_hash_alg(key)
  hash_alg = utility.parse_alg(hash_alg)
  unsigned_prefix = bytes(unsigned_prefix)

  if isinstance(signer, rsa.RSAPrivateKey):
    if hash_alg not in _RSA_HASHES:
      raise errors.UnsupportedAlgorithmError("RSA signing with {}".format(utility.alg_name(hash_alg)))
    sig = signer.sign(unsigned_prefix, crypto_padding.PKCS1v15(), _RSA_HASHES[hash_alg]())
    data = sig[::-1]
  else:
    if hash_alg not in _EC_HASHES:
      raise errors.UnsupportedAlgorithmError("ECDSA signing with {}".format(utility.alg_name(hash_alg)))
    (r, s) = signer.sign_deterministic(unsigned_prefix, hashfunc=_EC_HASHES[hash_alg], sigencode=sigencode_strings)
    data = r[::-1] + s[::-1]
  logger.debug("-- signed {} bytes with {}-{} / {}".format(
    len(unsigned_prefix), utility.alg_name(key.key_alg), key.key_size, utility.alg_name(hash_alg)))
  return KeySignature(key, Signature(_sig_scheme(key), key.key_size, hash_alg, data))


def verify(signed_prefix, key_signature):
  """ verify a key signature over the signed prefix

  :returns bool: True when the signature matches the embedded public key

  """
  if key_signature is None:
    return False
  key = key_signature.key
  sig = key_signature.signature
  if not key.populated or sig.key_size != key.key_size:
    return False
  signed_prefix = bytes(signed_prefix)
  if key.key_alg == utility.TPM_ALG_RSA:
    if sig.sig_scheme != utility.TPM_ALG_RSASSA or sig.hash_alg not in _RSA_HASHES:
      return False
    (e,) = struct.unpack('<I', key.data[:4])
    n = int.from_bytes(key.data[4:], 'little')
    pub = rsa.RSAPublicNumbers(e, n).public_key()
    try:
      pub.verify(sig.data[::-1], signed_prefix, crypto_padding.PKCS1v15(), _RSA_HASHES[sig.hash_alg]())
    except InvalidSignature:
      return False
    return True
  if key.key_alg == utility.TPM_ALG_ECC:
    if sig.sig_scheme != utility.TPM_ALG_ECDSA or sig.hash_alg not in _EC_HASHES or key.key_size not in _CURVES:
      return False
    half = len(key.data) // 2
    vk = VerifyingKey.from_string(key.data[:half][::-1] + key.data[half:][::-1], curve=_CURVES[key.key_size])
    rs = [sig.data[:half][::-1], sig.data[half:][::-1]]
    try:
      return vk.verify(rs, signed_prefix, hashfunc=_EC_HASHES[sig.hash_alg], sigdecode=sigdecode_strings)
    except BadSignatureError:
      return False
  raise errors.UnsupportedAlgorithmError("cannot verify {} key".format(utility.alg_name(key.key_alg)))


def truncate(signed_bytes, signed_region_end):
  """ cut a manifest at the end of its signed region

  :returns bdata: ``signed_bytes[:signed_region_end]``
  """
  if signed_region_end < 0 or signed_region_end > len(signed_bytes):
    raise errors.OffsetOutOfRangeError("signed region end {:#x} outside {} bytes".format(
      signed_region_end, len(signed_bytes)))
  return bytes(signed_bytes[:signed_region_end])


def sign_manifest(manifest, private_key, hash_alg=None):
  """ bind the key, sign the signed region and embed the result

  :param manifest: BootPolicyManifest or KeyManifest, updated in place
  :returns bdata: signed manifest bytes

  """
  manifest.key_signature = bind_key(manifest.key_signature, private_key, hash_alg)
  bdata = manifest.assemble()
  manifest.key_signature = sign(bdata[:manifest.signed_region_end], private_key,
                                bound=manifest.key_signature, hash_alg=manifest.key_signature.signature.hash_alg)
  bdata = manifest.assemble()
  logger.info("-- {} signed, {} bytes".format(type(manifest).__name__, len(bdata)))
  return bdata
