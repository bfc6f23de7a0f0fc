import struct

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from ecdsa import SigningKey
from ecdsa.curves import NIST256p, NIST384p

from bgprov import fit, utility
from bgprov.element import (BPMHeader, IBBElement, TXTElement, SignatureElement, IBBSegment,
                            Digest, DigestList, Key, Signature, KeySignature)
from bgprov.manifest import BootPolicyManifest

BIOS_SIZE = 0x100000
FIT_OFFSET = 0xFF000
MICROCODE_OFFSET = 0xE0000
IBB_OFFSET = 0xF0000
IBB_BASE = utility.offset_to_phys(IBB_OFFSET, BIOS_SIZE)
IBB_SIZE = 0x800
IBB_CODE = bytes(range(256)) * (IBB_SIZE // 256)


def make_bios(with_fit=True, c_v=1, unused_slots=0, padding=b'\xff'):
    """ 1MB image: IBB code, one microcode entry in the FIT, rest 0xFF

    :param unused_slots: unused (type 0x7F) entries after the microcode entry
    :param padding: byte written over the 0x100 bytes following the table
    """
    image = bytearray(b'\xff' * BIOS_SIZE)
    image[IBB_OFFSET:IBB_OFFSET + IBB_SIZE] = IBB_CODE
    image[MICROCODE_OFFSET:MICROCODE_OFFSET + 0x100] = b'\x5a' * 0x100
    if with_fit:
        hdr = fit.FITEntry(struct.unpack('<Q', fit.FIT_HEAD)[0], 2 + unused_slots, fit.FIT_TYPE_HEADER, c_v=c_v)
        mc = fit.FITEntry(utility.offset_to_phys(MICROCODE_OFFSET, BIOS_SIZE), 0, fit.FIT_TYPE_MICROCODE)
        entries = [hdr, mc] + [fit.FITEntry(0, 0, fit.FIT_TYPE_UNUSED) for _ in range(unused_slots)]
        table = bytearray(b''.join(e.encode() for e in entries))
        if c_v:
            hdr.checksum = fit.table_checksum(table)
            table[:16] = hdr.encode()
        image[FIT_OFFSET:FIT_OFFSET + len(table)] = table
        image[FIT_OFFSET + len(table):FIT_OFFSET + len(table) + 0x100] = padding * 0x100
        image[BIOS_SIZE - 0x40:BIOS_SIZE - 0x38] = struct.pack('<Q', utility.offset_to_phys(FIT_OFFSET, BIOS_SIZE))
    return bytes(image)


def rsa2048_key_signature():
    """ key signature shaped like an RSA-2048 one, content is filler """
    key = Key(utility.TPM_ALG_RSA, 2048, struct.pack('<I', 0x10001) + b'\xa5' * 256)
    sig = Signature(utility.TPM_ALG_RSASSA, 2048, utility.TPM_ALG_SHA256, b'\x3c' * 256)
    return KeySignature(key, sig)


def make_bpm(key_signature=None, txt=False, algorithms=(utility.TPM_ALG_SHA256,)):
    ibb = IBBElement(segments=[IBBSegment(IBB_BASE, IBB_SIZE)],
                     digest_list=DigestList([Digest.empty(a) for a in algorithms]),
                     entry_point=0xFFFFFFF0, mch_bar=0xFED10000)
    return BootPolicyManifest(BPMHeader(bpm_revision=1, bpm_svn=2, acm_svn_auth=3, nem_pages=3),
                              [ibb], TXTElement() if txt else None, SignatureElement(key_signature))


@pytest.fixture
def bios():
    return make_bios()


@pytest.fixture(scope='session')
def ec_key():
    return SigningKey.generate(curve=NIST256p)


@pytest.fixture(scope='session')
def ec_key2():
    return SigningKey.generate(curve=NIST256p)


@pytest.fixture(scope='session')
def ec384_key():
    return SigningKey.generate(curve=NIST384p)


@pytest.fixture(scope='session')
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def rsa_key2():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)
