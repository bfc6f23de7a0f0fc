import struct

import pytest

from bgprov import errors, utility
from bgprov.element import (IBBElement, TXTElement, SignatureElement, KeyManifestBody, IBBSegment,
                            Digest, DigestList, Key, Signature, KeySignature, KeyHash,
                            STRUCTINFO_SIZE, KM_USAGE_BPM, decode_element, encode_element)

from conftest import IBB_BASE, IBB_SIZE, rsa2048_key_signature


def _ibb():
    return IBBElement(segments=[IBBSegment(IBB_BASE, IBB_SIZE)],
                      digest_list=DigestList([Digest.empty(utility.TPM_ALG_SHA256)]))


def _set_size(bdata, size):
    return bdata[:10] + struct.pack('<H', size) + bdata[12:]


def test_ibb_element_layout():
    bdata = encode_element(_ibb())
    assert len(bdata) == 128
    assert bdata[:8] == b'__IBBS__'
    assert struct.unpack_from('<H', bdata, 10)[0] == 128


def test_ibb_element_round_trip():
    elem = _ibb()
    elem.pbet_value = 0xE
    elem.dma_prot_base1 = 0x100000000
    bdata = encode_element(elem)
    (decoded, consumed) = decode_element(bdata, 0)
    assert consumed == len(bdata)
    assert decoded == elem
    assert encode_element(decoded) == bdata


def test_decode_at_offset():
    bdata = b'\x00' * 7 + encode_element(TXTElement())
    (decoded, consumed) = decode_element(bdata, 7)
    assert isinstance(decoded, TXTElement)
    assert consumed == len(bdata) - 7
    assert decoded.pwrm_base_offset == 0xFE000000


def test_digest_list_size_counts_header():
    dl = DigestList([Digest.empty(utility.TPM_ALG_SHA256), Digest.empty(utility.TPM_ALG_SHA384)])
    bdata = dl.encode()
    assert struct.unpack_from('<HH', bdata, 0) == (len(bdata), 2)
    assert len(bdata) == 4 + 36 + 52


def test_digest_list_rejects_duplicates():
    with pytest.raises(errors.DuplicateAlgorithmError):
        DigestList([Digest.empty(utility.TPM_ALG_SHA256), Digest(utility.TPM_ALG_SHA256, b'\x01' * 32)])


def test_decode_duplicate_digests():
    d = Digest.empty(utility.TPM_ALG_SHA1).encode()
    bdata = struct.pack('<HH', 4 + 2 * len(d), 2) + d + d
    with pytest.raises(errors.DuplicateAlgorithmError):
        DigestList.decode(bdata)


def test_unknown_structure_id():
    with pytest.raises(errors.UnsupportedElementError):
        decode_element(b'__XXXX__' + bytes(16))


@pytest.mark.parametrize('cut', [1, 12, 64, 127])
def test_truncated_ibb(cut):
    bdata = encode_element(_ibb())
    with pytest.raises(errors.TruncatedInputError):
        decode_element(bdata[:cut])


def test_ibb_without_segments():
    with pytest.raises(errors.InvalidManifestError):
        encode_element(IBBElement())
    bdata = encode_element(_ibb())[:-12]
    bdata = _set_size(bdata[:-1] + b'\x00', len(bdata))
    with pytest.raises(errors.InvalidManifestError):
        decode_element(bdata)


def test_declared_size_larger_than_content():
    bdata = encode_element(_ibb()) + bytes(4)
    with pytest.raises(errors.InvalidManifestError):
        decode_element(_set_size(bdata, len(bdata)))


def test_declared_size_smaller_than_content():
    bdata = encode_element(_ibb())
    with pytest.raises(errors.InvalidManifestError):
        decode_element(_set_size(bdata, len(bdata) - 12))


def test_key_signature_sizes():
    assert len(rsa2048_key_signature().encode()) == 529
    key = Key(utility.TPM_ALG_ECC, 256, b'\x11' * 64)
    sig = Signature(utility.TPM_ALG_ECDSA, 256, utility.TPM_ALG_SHA256, b'\x22' * 64)
    assert len(KeySignature(key, sig).encode()) == 141
    assert len(KeySignature().encode()) == 13


def test_key_data_length_checked():
    with pytest.raises(errors.InvalidManifestError):
        Key(utility.TPM_ALG_RSA, 2048, b'\x00' * 256).encode()


def test_unknown_key_algorithm():
    bdata = struct.pack('<HBH', 0x99, 0x10, 256)
    with pytest.raises(errors.InvalidManifestError):
        Key.decode(bdata)


def test_signature_element_stripped():
    bdata = encode_element(SignatureElement(rsa2048_key_signature()))
    (pmse, consumed) = decode_element(bdata[:STRUCTINFO_SIZE])
    assert pmse.key_signature is None
    assert consumed == STRUCTINFO_SIZE
    with pytest.raises(errors.TruncatedInputError):
        decode_element(bdata[:STRUCTINFO_SIZE + 100])


def test_key_manifest_body_offset():
    body = KeyManifestBody(km_id=1, hashes=[KeyHash(KM_USAGE_BPM, Digest.empty(utility.TPM_ALG_SHA256)),
                                            KeyHash(KM_USAGE_BPM, Digest.empty(utility.TPM_ALG_SHA384))])
    bdata = encode_element(body)
    assert len(bdata) == 24 + (8 + 36) + (8 + 52)
    assert struct.unpack_from('<H', bdata, 12)[0] == len(bdata)
    (decoded, consumed) = decode_element(bdata)
    assert decoded == body
    assert consumed == len(bdata)


def test_dict_round_trip():
    elem = _ibb()
    elem.flags = 0x12
    d = elem.to_dict()
    assert d['flags'] == '0x12'
    assert IBBElement.from_dict(d) == elem
    ks = rsa2048_key_signature()
    assert KeySignature.from_dict(ks.to_dict()) == ks


def test_equality_ignores_derived_fields():
    a = _ibb()
    b = _ibb()
    (c, _) = decode_element(encode_element(a))
    assert a == b == c
    b.segments[0].flags = 1
    assert a != b
