#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""

   Boot Guard provisioning utility functions

   TPM algorithm identifiers, hashing helpers and flash address mapping
   shared by the manifest, digest, signing and FIT modules.

"""
import hashlib
import logging
logger = logging.getLogger(__name__)

from bgprov import errors

# TPM 2.0 algorithm identifiers
TPM_ALG_ERROR   = 0x0000
TPM_ALG_RSA     = 0x0001
TPM_ALG_SHA1    = 0x0004
TPM_ALG_SHA256  = 0x000B
TPM_ALG_SHA384  = 0x000C
TPM_ALG_SHA512  = 0x000D
TPM_ALG_NULL    = 0x0010
TPM_ALG_SM3_256 = 0x0012
TPM_ALG_RSASSA  = 0x0014
TPM_ALG_RSAPSS  = 0x0016
TPM_ALG_ECDSA   = 0x0018
TPM_ALG_SM2     = 0x001B
TPM_ALG_ECC     = 0x0023

ALG_NAMES = {
    TPM_ALG_ERROR:   'ERROR',
    TPM_ALG_RSA:     'RSA',
    TPM_ALG_SHA1:    'SHA1',
    TPM_ALG_SHA256:  'SHA256',
    TPM_ALG_SHA384:  'SHA384',
    TPM_ALG_SHA512:  'SHA512',
    TPM_ALG_NULL:    'NULL',
    TPM_ALG_SM3_256: 'SM3_256',
    TPM_ALG_RSASSA:  'RSASSA',
    TPM_ALG_RSAPSS:  'RSAPSS',
    TPM_ALG_ECDSA:   'ECDSA',
    TPM_ALG_SM2:     'SM2',
    TPM_ALG_ECC:     'ECC',
}

# hash algorithm -> (hashlib name, digest size)
HASH_ALGS = {
    TPM_ALG_SHA1:    ('sha1', 20),
    TPM_ALG_SHA256:  ('sha256', 32),
    TPM_ALG_SHA384:  ('sha384', 48),
    TPM_ALG_SHA512:  ('sha512', 64),
    TPM_ALG_SM3_256: ('sm3', 32),
}

FOUR_GB = 0x100000000


def alg_name(alg):
    """ return printable name of a TPM algorithm id """
    return ALG_NAMES.get(alg, hex(alg))


def parse_alg(value):
    """ convert algorithm from config value to TPM algorithm id

    :param value: integer, numeric string such as '0x0b', or name such as 'SHA256'

    :returns alg: TPM algorithm id as integer

    """
    if isinstance(value, int):
        return value
    s = value.strip()
    for (k, v) in ALG_NAMES.items():
        if v == s.upper().replace('-', '_'):
            return k
    if s.upper() == 'SM3':
        return TPM_ALG_SM3_256
    try:
        return int(s, 0)
    except ValueError:
        logger.error("-- unknown algorithm {}".format(value))
        raise


def hash_size(alg):
    """ digest size in bytes of a hash algorithm, 0 for NULL """
    if alg == TPM_ALG_NULL:
        return 0
    if alg not in HASH_ALGS:
        raise errors.UnsupportedAlgorithmError("unsupported hash algorithm {}".format(alg_name(alg)))
    return HASH_ALGS[alg][1]


def get_hash(alg, bdata):
    """ calculate digest of binary data

    :param alg: TPM hash algorithm id
    :param bdata: bytes or bytearray

    :returns digest: bytes of digest, empty bytes for TPM_ALG_NULL

    """
    if alg == TPM_ALG_NULL:
        return b''
    if alg not in HASH_ALGS:
        raise errors.UnsupportedAlgorithmError("unsupported hash algorithm {}".format(alg_name(alg)))
    name = HASH_ALGS[alg][0]
    try:
        h = hashlib.new(name)
    except ValueError:
        # sm3 is only present when the OpenSSL build provides it
        raise errors.UnsupportedAlgorithmError("hashlib has no {} support".format(name))
    h.update(bytes(bdata))
    return h.digest()


def check_unique(algorithms):
    """ raise DuplicateAlgorithmError if any algorithm appears twice """
    seen = []
    for alg in algorithms:
        if alg in seen:
            raise errors.DuplicateAlgorithmError("duplicate algorithm {}".format(alg_name(alg)))
        seen.append(alg)


def offset_to_phys(offset, image_size):
    """ physical address of an image offset, image is mapped right below 4GB """
    return FOUR_GB - image_size + offset


def phys_to_offset(address, image_size):
    """ image offset of a flash address

    Addresses inside the top-of-4GB window are mapped from the end of the
    image, smaller values are taken as direct image offsets.

    """
    base = FOUR_GB - image_size
    if address >= base:
        offset = address - base
    else:
        offset = address
    if offset >= image_size:
        raise errors.OffsetOutOfRangeError(
            "address {:#x} is outside the {:#x} bytes image".format(address, image_size))
    return offset


def set_logger(logfile=None, level=logging.DEBUG):
    """ configure root logger with console and optional log file handler """
    handlers = [logging.StreamHandler()]
    if logfile is not None:
        handlers.append(logging.FileHandler(logfile, 'w'))
    logging.basicConfig(level=level, handlers=handlers)
