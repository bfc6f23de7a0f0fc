import hashlib
import struct

import pytest

from bgprov import digest, errors, fit, manifest, sign, utility
from bgprov.element import IBBSegment

from conftest import BIOS_SIZE, FIT_OFFSET, IBB_BASE, IBB_OFFSET, make_bios, make_bpm


def _acm(size=0x2000):
    acm = bytearray(b'\x33' * size)
    acm[:28] = struct.pack('<HHIIIIII', fit.ACM_MODULE_TYPE, 0, 0xE0, 0x30000, 0, fit.ACM_VENDOR_INTEL,
                           0x20240101, size // 4)
    return bytes(acm)


def _types(bios):
    return [e.type for e in fit.get_entries(bios)]


def _offset_of(bios, fit_type):
    entry = next(e for e in fit.get_entries(bios) if e.type == fit_type)
    return utility.phys_to_offset(entry.address, len(bios))


def test_find_fit(bios):
    assert fit.find_fit(bios) == FIT_OFFSET
    entries = fit.get_entries(bios)
    assert [e.type for e in entries] == [fit.FIT_TYPE_HEADER, fit.FIT_TYPE_MICROCODE]
    assert entries[0].c_v == 1


def test_no_payload(bios):
    with pytest.raises(errors.NoPayloadError):
        fit.stitch(bios)


def test_no_fit_leaves_input_unchanged():
    image = bytearray(make_bios(with_fit=False))
    copy = bytes(image)
    with pytest.raises(errors.FITNotFoundError):
        fit.stitch(image, km=b'\x01' * 64)
    assert bytes(image) == copy


def test_pointer_to_garbage(bios):
    image = bytearray(bios)
    image[FIT_OFFSET] = 0
    with pytest.raises(errors.FITNotFoundError):
        fit.find_fit(bytes(image))


def test_stitch_adds_entries_in_type_order(bios):
    km = b'\x4b' * 0x240
    bpm = make_bpm(txt=True).assemble()
    out = fit.stitch(bios, km=km, bpm=bpm)
    assert len(out) == len(bios)
    assert _types(out) == [fit.FIT_TYPE_HEADER, fit.FIT_TYPE_MICROCODE,
                           fit.FIT_TYPE_KEY_MANIFEST, fit.FIT_TYPE_BOOT_POLICY_MANIFEST]
    assert fit.extract(out, fit.FIT_TYPE_KEY_MANIFEST) == km
    assert fit.extract(out, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) == bpm
    entries = fit.get_entries(out)
    assert entries[0].size == 4
    assert all(e.version == fit.FIT_VERSION for e in entries)
    assert _offset_of(out, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) % 0x10 == 0
    assert sum(out[FIT_OFFSET:FIT_OFFSET + 4 * 16]) % 0x100 == 0


def test_stitch_without_checksum():
    bios = make_bios(c_v=0)
    out = fit.stitch(bios, km=b'\x4b' * 0x40)
    assert fit.get_entries(out)[0].checksum == 0


def test_input_not_modified(bios):
    image = bytearray(bios)
    fit.stitch(image, bpm=make_bpm().assemble())
    assert bytes(image) == bios


def test_replace_in_place(bios):
    larger = make_bpm(txt=True).assemble()
    smaller = make_bpm().assemble()
    assert len(larger) - len(smaller) == 40
    first = fit.stitch(bios, bpm=larger)
    offset = _offset_of(first, fit.FIT_TYPE_BOOT_POLICY_MANIFEST)
    second = fit.stitch(first, bpm=smaller)
    assert _offset_of(second, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) == offset
    assert second[offset:offset + len(smaller)] == smaller
    assert second[offset + len(smaller):offset + len(larger)] == b'\xff' * 40
    assert fit.extract(second, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) == smaller
    assert len(fit.get_entries(second)) == 3


def test_bpm_payload_must_parse(bios):
    with pytest.raises(errors.UnsupportedElementError):
        fit.stitch(bios, bpm=b'\x42' * 0x100)
    km = manifest.KeyManifest().assemble()
    with pytest.raises(errors.InvalidManifestError):
        fit.stitch(bios, bpm=km)


def _top_of_flash_bpm(bios, key):
    """ signed BPM measuring the IBB up to the top of flash, FIT table excluded """
    bpm = make_bpm()
    bpm.ibb[0].segments = [
        IBBSegment(IBB_BASE, FIT_OFFSET - IBB_OFFSET),
        IBBSegment(utility.offset_to_phys(FIT_OFFSET, BIOS_SIZE), 0x100, flags=1),
        IBBSegment(utility.offset_to_phys(FIT_OFFSET + 0x100, BIOS_SIZE), BIOS_SIZE - FIT_OFFSET - 0x100),
    ]
    digest.rehash(bpm, bios)
    return sign.sign_manifest(bpm, key)


def _ibb_digest_matches(image):
    bpm = manifest.disassemble(fit.extract(image, fit.FIT_TYPE_BOOT_POLICY_MANIFEST))
    content = digest.ibb_content(bpm.ibb[0], image)
    return hashlib.sha256(content).digest() == bpm.ibb[0].digest_list.digests[0].buffer


def test_stitch_keeps_measured_ibb(bios, ec_key):
    bpm = _top_of_flash_bpm(bios, ec_key)
    assert fit.measured_ranges(bpm, BIOS_SIZE) == [(IBB_OFFSET, FIT_OFFSET), (FIT_OFFSET + 0x100, BIOS_SIZE)]
    out = fit.stitch(bios, bpm=bpm)
    assert _offset_of(out, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) + len(bpm) <= IBB_OFFSET
    assert _ibb_digest_matches(out)

    km = b'\x4b' * 0x240
    again = fit.stitch(out, km=km)
    assert _offset_of(again, fit.FIT_TYPE_KEY_MANIFEST) + len(km) <= IBB_OFFSET
    assert fit.extract(again, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) == bpm
    assert _ibb_digest_matches(again)


def test_no_room_outside_measured_ibb(bios):
    bpm = make_bpm()
    bpm.ibb[0].segments = [IBBSegment(utility.offset_to_phys(0, BIOS_SIZE), BIOS_SIZE)]
    with pytest.raises(errors.InsufficientSpaceError):
        fit.stitch(bios, bpm=bpm.assemble())


def test_stitch_takes_unused_slot():
    bios = make_bios(unused_slots=1, padding=b'\x00')
    assert _types(bios) == [fit.FIT_TYPE_HEADER, fit.FIT_TYPE_MICROCODE, fit.FIT_TYPE_UNUSED]
    km = b'\x4b' * 0x40
    out = fit.stitch(bios, km=km)
    assert _types(out) == [fit.FIT_TYPE_HEADER, fit.FIT_TYPE_MICROCODE, fit.FIT_TYPE_KEY_MANIFEST]
    assert fit.extract(out, fit.FIT_TYPE_KEY_MANIFEST) == km
    assert sum(out[FIT_OFFSET:FIT_OFFSET + 3 * 16]) % 0x100 == 0
    assert out[FIT_OFFSET + 3 * 16:FIT_OFFSET + 3 * 16 + 0x100] == bytes(0x100)
    with pytest.raises(errors.InsufficientSpaceError):
        fit.stitch(out, bpm=make_bpm().assemble())


def test_relocate_larger_payload(bios):
    first = fit.stitch(bios, km=b'\x4b' * 0x100)
    offset = _offset_of(first, fit.FIT_TYPE_KEY_MANIFEST)
    second = fit.stitch(first, km=b'\xb4' * 0x300)
    new_offset = _offset_of(second, fit.FIT_TYPE_KEY_MANIFEST)
    assert new_offset != offset
    assert fit.extract(second, fit.FIT_TYPE_KEY_MANIFEST) == b'\xb4' * 0x300
    assert b'\x4b' * 0x10 not in second
    assert len(fit.get_entries(second)) == 3


def test_stitch_acm(bios):
    acm = _acm()
    assert fit.acm_size(acm) == 0x2000
    out = fit.stitch(bios, acm=acm)
    assert _types(out)[2] == fit.FIT_TYPE_STARTUP_ACM
    assert _offset_of(out, fit.FIT_TYPE_STARTUP_ACM) % 0x1000 == 0
    assert fit.extract(out, fit.FIT_TYPE_STARTUP_ACM) == acm


def test_invalid_acm():
    with pytest.raises(errors.InvalidManifestError):
        fit.acm_size(b'\x00' * 0x100)
    with pytest.raises(errors.TruncatedInputError):
        fit.acm_size(b'\x02\x00')


def test_no_room_for_new_entry(bios):
    image = bytearray(bios)
    image[FIT_OFFSET + 32:FIT_OFFSET + 48] = bytes(16)
    with pytest.raises(errors.InsufficientSpaceError):
        fit.stitch(bytes(image), km=b'\x4b' * 0x40)


def test_no_free_region():
    image = bytearray(make_bios())
    image[:0xE0000] = bytes(0xE0000)
    with pytest.raises(errors.InsufficientSpaceError):
        fit.stitch(bytes(image), acm=_acm(0x20000))


def test_extract_missing_entry(bios):
    with pytest.raises(errors.FITNotFoundError):
        fit.extract(bios, fit.FIT_TYPE_KEY_MANIFEST)


def test_address_mapping():
    assert utility.offset_to_phys(0, BIOS_SIZE) == 0xFFF00000
    assert utility.phys_to_offset(0xFFFFFFC0, BIOS_SIZE) == BIOS_SIZE - 0x40
    with pytest.raises(errors.OffsetOutOfRangeError):
        utility.phys_to_offset(BIOS_SIZE, BIOS_SIZE)
