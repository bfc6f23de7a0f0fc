#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
    Firmware Interface Table (FIT) reader and stitcher

    The FIT pointer is the 64 bits physical address stored 0x40 bytes below
    the end of the BIOS image. The table is a list of 16 bytes entries::

        address u64, size u24, rsvd u8, version u16, type:7|C_V:1 u8, checksum u8

    whose first entry is the header (``_FIT_   ``, entry count, version 0x0100).

    Example::

        >>> from bgprov import fit
        >>> new_bios = fit.stitch(bios, acm=acm, km=km, bpm=bpm)
        >>> fit.extract(new_bios, fit.FIT_TYPE_BOOT_POLICY_MANIFEST) == bpm
        True

"""
import struct

import logging
logger = logging.getLogger(__name__)

from bgprov import errors, utility, manifest

FIT_HEAD = b'_FIT_   '
FIT_POINTER_OFFSET = 0x40
FIT_ENTRY_SIZE = 16
FIT_ENTRY_FMT = '<QIHBB'
FIT_ENTRY_KEYS = ('address', 'size_rsvd', 'version', 'type_cv', 'checksum')
FIT_VERSION = 0x0100

FIT_TYPE_HEADER               = 0x00
FIT_TYPE_MICROCODE            = 0x01
FIT_TYPE_STARTUP_ACM          = 0x02
FIT_TYPE_BIOS_STARTUP         = 0x07
FIT_TYPE_TPM_POLICY           = 0x08
FIT_TYPE_BIOS_POLICY          = 0x09
FIT_TYPE_TXT_POLICY           = 0x0A
FIT_TYPE_KEY_MANIFEST         = 0x0B
FIT_TYPE_BOOT_POLICY_MANIFEST = 0x0C
FIT_TYPE_UNUSED               = 0x7F

FIT_TYPE_NAMES = {
    FIT_TYPE_HEADER:               'FIT header',
    FIT_TYPE_MICROCODE:            'microcode',
    FIT_TYPE_STARTUP_ACM:          'startup ACM',
    FIT_TYPE_BIOS_STARTUP:         'BIOS startup module',
    FIT_TYPE_TPM_POLICY:           'TPM policy',
    FIT_TYPE_BIOS_POLICY:          'BIOS policy',
    FIT_TYPE_TXT_POLICY:           'TXT policy',
    FIT_TYPE_KEY_MANIFEST:         'Key Manifest',
    FIT_TYPE_BOOT_POLICY_MANIFEST: 'Boot Policy Manifest',
    FIT_TYPE_UNUSED:               'unused',
}

# placement alignment of stitched payloads
FIT_ALIGNMENT = {
    FIT_TYPE_STARTUP_ACM:          0x1000,
    FIT_TYPE_KEY_MANIFEST:         0x10,
    FIT_TYPE_BOOT_POLICY_MANIFEST: 0x10,
}

# ACM header fields
ACM_MODULE_TYPE = 0x2
ACM_VENDOR_INTEL = 0x8086
ACM_HEADER_FMT = '<HHIIIII'
ACM_HEADER_KEYS = ('module_type', 'module_subtype', 'header_len', 'header_ver',
                   'flags', 'module_vendor', 'date')
ACM_SIZE_OFFSET = 24


class FITEntry(object):
    """ one 16 bytes FIT entry """

    def __init__(self, address=0, size=0, fit_type=FIT_TYPE_UNUSED, version=FIT_VERSION, c_v=0, checksum=0, rsvd=0):
        self.address = address
        self.size = size
        self.rsvd = rsvd
        self.version = version
        self.type = fit_type
        self.c_v = c_v
        self.checksum = checksum

    @property
    def type_name(self):
        return FIT_TYPE_NAMES.get(self.type, hex(self.type))

    def encode(self):
        return struct.pack(FIT_ENTRY_FMT, self.address, (self.rsvd << 24) | (self.size & 0xFFFFFF),
                           self.version, (self.c_v << 7) | (self.type & 0x7F), self.checksum)

    @classmethod
    def decode(cls, bdata, offset=0):
        d = dict(zip(FIT_ENTRY_KEYS, struct.unpack_from(FIT_ENTRY_FMT, bdata, offset)))
        return cls(d['address'], d['size_rsvd'] & 0xFFFFFF, d['type_cv'] & 0x7F, d['version'],
                   (d['type_cv'] & 0x80) >> 7, d['checksum'], d['size_rsvd'] >> 24)

    def __repr__(self):
        return 'FITEntry({}, address={:#x}, size={:#x}, version={:#x}, c_v={})'.format(
            self.type_name, self.address, self.size, self.version, self.c_v)


def find_fit(bios):
    """ offset of the FIT in the image

    :raises FITNotFoundError: pointer missing or not pointing at a FIT header
    """
    if len(bios) < FIT_POINTER_OFFSET:
        raise errors.FITNotFoundError("image of {} bytes has no FIT pointer".format(len(bios)))
    (address,) = struct.unpack_from('<Q', bios, len(bios) - FIT_POINTER_OFFSET)
    if address >= utility.FOUR_GB:
        raise errors.FITNotFoundError("FIT pointer {:#x} is not a flash address".format(address))
    try:
        offset = utility.phys_to_offset(address, len(bios))
    except errors.OffsetOutOfRangeError:
        raise errors.FITNotFoundError("FIT pointer {:#x} outside the image".format(address)) from None
    if bytes(bios[offset:offset + len(FIT_HEAD)]) != FIT_HEAD:
        logger.error("-- no FIT header at {:#x} (pointer {:#x})".format(offset, address))
        raise errors.FITNotFoundError("no FIT header at offset {:#x}".format(offset))
    logger.debug("-- FIT at offset {:#x}".format(offset))
    return offset


def get_entries(bios, fit_offset=None):
    """ list of FIT entries, header entry first """
    if fit_offset is None:
        fit_offset = find_fit(bios)
    header = FITEntry.decode(bios, fit_offset)
    count = header.size
    if count == 0 or fit_offset + count * FIT_ENTRY_SIZE > len(bios):
        raise errors.FITNotFoundError("FIT at {:#x} declares {} entries".format(fit_offset, count))
    return [FITEntry.decode(bios, fit_offset + i * FIT_ENTRY_SIZE) for i in range(count)]


def table_checksum(bdata):
    """ checksum byte making the table sum to zero, bdata with checksum byte cleared """
    return (-sum(bdata)) & 0xFF


def acm_size(acm):
    """ ACM size in bytes from its header """
    if len(acm) < ACM_SIZE_OFFSET + 4:
        raise errors.TruncatedInputError("ACM header needs {} bytes, {} given".format(ACM_SIZE_OFFSET + 4, len(acm)))
    hdr = dict(zip(ACM_HEADER_KEYS, struct.unpack_from(ACM_HEADER_FMT, acm, 0)))
    if hdr['module_type'] != ACM_MODULE_TYPE or hdr['module_vendor'] != ACM_VENDOR_INTEL:
        raise errors.InvalidManifestError("not an ACM: module type {:#x}, vendor {:#x}".format(
            hdr['module_type'], hdr['module_vendor']))
    (dwords,) = struct.unpack_from('<I', acm, ACM_SIZE_OFFSET)
    return dwords * 4


def _region_size(image, entry, offset):
    if entry.type == FIT_TYPE_STARTUP_ACM:
        return acm_size(image[offset:])
    return entry.size


def extract(bios, fit_type):
    """ export the ACM, KM or BPM referenced by the FIT

    :param bios: BIOS image bytes
    :param fit_type: FIT_TYPE_STARTUP_ACM, FIT_TYPE_KEY_MANIFEST or FIT_TYPE_BOOT_POLICY_MANIFEST

    :returns bdata: payload bytes
    """
    for entry in get_entries(bios)[1:]:
        if entry.type != fit_type:
            continue
        offset = utility.phys_to_offset(entry.address, len(bios))
        size = _region_size(bios, entry, offset)
        if size == 0 or offset + size > len(bios):
            raise errors.OffsetOutOfRangeError("{} at {:#x} with size {:#x} does not fit the image".format(
                entry.type_name, offset, size))
        logger.info("-- export {} from {:#x}, {:#x} bytes".format(entry.type_name, offset, size))
        return bytes(bios[offset:offset + size])
    raise errors.FITNotFoundError("no {} entry in FIT".format(FIT_TYPE_NAMES.get(fit_type, hex(fit_type))))


def _align_down(value, align):
    return value - (value % align)


def _find_free(image, size, align, reserved):
    """ highest aligned all-0xFF region of size bytes outside the reserved intervals """
    blank = b'\xff' * size
    start = _align_down(len(image) - size, align)
    while start >= 0:
        end = start + size
        conflict = [r for r in reserved if start < r[1] and r[0] < end]
        if conflict:
            start = _align_down(min(r[0] for r in conflict) - size, align)
            continue
        window = image[start:end]
        if window == blank:
            return start
        last_used = len(window.rstrip(b'\xff')) - 1
        start = _align_down(start + last_used - size, align)
    raise errors.InsufficientSpaceError("no free {:#x} bytes region aligned to {:#x}".format(size, align))


def measured_ranges(bpm, image_size):
    """ (start, end) image offsets of the segments a BPM measures

    :param bpm: Boot Policy Manifest bytes
    :param image_size: size of the BIOS image the segments point into
    """
    parsed = manifest.disassemble(bpm)
    if not isinstance(parsed, manifest.BootPolicyManifest):
        raise errors.InvalidManifestError("BPM payload is not a Boot Policy Manifest")
    ranges = []
    for elem in parsed.ibb:
        for seg in elem.segments:
            if not seg.hashed or seg.size == 0:
                continue
            start = utility.phys_to_offset(seg.base, image_size)
            if start + seg.size > image_size:
                raise errors.OffsetOutOfRangeError("IBB segment {:#x}+{:#x} runs past the {:#x} bytes image".format(
                    seg.base, seg.size, image_size))
            ranges.append((start, start + seg.size))
    return ranges


def _insert_entry(entries, entry):
    """ insert in type order, taking the place of an unused slot if there is one """
    unused = next((i for (i, e) in enumerate(entries) if i > 0 and e.type == FIT_TYPE_UNUSED), None)
    if unused is not None:
        del entries[unused]
    idx = next((i for (i, e) in enumerate(entries) if i > 0 and e.type > entry.type), len(entries))
    entries.insert(idx, entry)
    return idx, unused is not None


def _place(image, entries, fit_type, payload, reserved):
    name = FIT_TYPE_NAMES[fit_type]
    entry = next((e for e in entries[1:] if e.type == fit_type), None)
    if entry is not None:
        offset = utility.phys_to_offset(entry.address, len(image))
        old_size = _region_size(image, entry, offset)
        if offset + old_size > len(image):
            raise errors.OffsetOutOfRangeError("{} region {:#x}+{:#x} outside the image".format(name, offset, old_size))
        if len(payload) <= old_size:
            image[offset:offset + len(payload)] = payload
            image[offset + len(payload):offset + old_size] = b'\xff' * (old_size - len(payload))
            if fit_type != FIT_TYPE_STARTUP_ACM:
                entry.size = len(payload)
            logger.info("-- stitch {} in place at {:#x}, {:#x} bytes".format(name, offset, len(payload)))
            return
        logger.warning("-- {} of {:#x} bytes does not fit the {:#x} bytes at {:#x}, relocate".format(
            name, len(payload), old_size, offset))
        image[offset:offset + old_size] = b'\xff' * old_size
    offset = _find_free(image, len(payload), FIT_ALIGNMENT[fit_type], reserved)
    image[offset:offset + len(payload)] = payload
    reserved.append((offset, offset + len(payload)))
    address = utility.offset_to_phys(offset, len(image))
    size = 0 if fit_type == FIT_TYPE_STARTUP_ACM else len(payload)
    if entry is None:
        entry = FITEntry(address, size, fit_type)
        (idx, reused) = _insert_entry(entries, entry)
        logger.info("-- add FIT entry for {} at index {}{}".format(name, idx, ', unused slot taken' if reused else ''))
    else:
        entry.address = address
        entry.size = size
    logger.info("-- stitch {} at {:#x} (address {:#x}), {:#x} bytes".format(name, offset, address, len(payload)))


def stitch(bios, acm=b'', bpm=b'', km=b''):
    """ embed ACM, KM and BPM into a BIOS image through its FIT

    Payloads replace the regions their FIT entries point to when they fit,
    otherwise they move to a free (all 0xFF) region outside the IBB segments
    measured by the BPM (the one given, else the one the FIT points to).
    Missing entries take unused (type 0x7F) slots first, then grow the
    table, in type order. The input image is not modified.

    :param bios: BIOS image bytes
    :param acm: startup ACM bytes, optional
    :param bpm: Boot Policy Manifest bytes, optional
    :param km: Key Manifest bytes, optional

    :returns bdata: new BIOS image bytes

    """
    payloads = [(FIT_TYPE_STARTUP_ACM, bytes(acm)), (FIT_TYPE_KEY_MANIFEST, bytes(km)),
                (FIT_TYPE_BOOT_POLICY_MANIFEST, bytes(bpm))]
    if not any(p for (_, p) in payloads):
        raise errors.NoPayloadError("at least one of ACM, KM or BPM is required")
    image = bytearray(bios)
    fit_offset = find_fit(image)
    entries = get_entries(image, fit_offset)

    present = [e.type for e in entries[1:]]
    new_count = len([t for (t, p) in payloads if p and t not in present])
    grow_count = max(0, new_count - present.count(FIT_TYPE_UNUSED))
    table_end = fit_offset + (len(entries) + grow_count) * FIT_ENTRY_SIZE
    if grow_count:
        grow = image[fit_offset + len(entries) * FIT_ENTRY_SIZE:table_end]
        if table_end > len(image) - FIT_POINTER_OFFSET or grow != b'\xff' * len(grow):
            raise errors.InsufficientSpaceError("no room for {} more FIT entries at {:#x}".format(
                grow_count, fit_offset + len(entries) * FIT_ENTRY_SIZE))
    reserved = [(fit_offset, table_end), (len(image) - FIT_POINTER_OFFSET, len(image))]

    if bpm:
        measured = measured_ranges(bytes(bpm), len(image))
    elif FIT_TYPE_BOOT_POLICY_MANIFEST in present:
        measured = measured_ranges(extract(image, FIT_TYPE_BOOT_POLICY_MANIFEST), len(image))
    else:
        measured = []
    for (start, end) in measured:
        logger.debug("-- keep measured IBB range {:#x}-{:#x}".format(start, end))
    reserved.extend(measured)

    for (fit_type, payload) in payloads:
        if payload:
            _place(image, entries, fit_type, payload, reserved)

    header = entries[0]
    header.size = len(entries)
    header.checksum = 0
    table = bytearray(b''.join(e.encode() for e in entries))
    if header.c_v:
        header.checksum = table_checksum(table)
        table[:FIT_ENTRY_SIZE] = header.encode()
    image[fit_offset:fit_offset + len(table)] = table
    logger.debug("-- FIT has {} entries".format(len(entries)))
    return bytes(image)
