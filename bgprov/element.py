#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Boot Guard (CBnT) manifest element codec

  Every element starts with a 12 bytes structure info header::

    struct_ID[8], struct_ver u8, var0 u8, element_size u16

  followed by the element body. All integers are little-endian. Elements are
  picked by their structure ID::

    ===========  ======================================
    __ACBP__     Boot Policy Manifest header (BPMH)
    __IBBS__     Initial Boot Block element (IBBS)
    __TXTS__     TXT element (TXTS)
    __PMSG__     Boot Policy Manifest signature (PMSE)
    __KEYM__     Key Manifest body
    ===========  ======================================

  Example::

    >>> from bgprov import element
    >>> elem, consumed = element.decode_element(bpm_bytes, 20)
    >>> elem.segments[0].base
    4294901760

"""
import struct
from collections import OrderedDict

import logging
logger = logging.getLogger(__name__)

from bgprov import errors, utility

_STRUCTINFO_FMT  = '<8sBBH'
_STRUCTINFO_KEYS = ('struct_id', 'struct_ver', 'var0', 'element_size')
STRUCTINFO_SIZE  = struct.calcsize(_STRUCTINFO_FMT)

BPMH_STRUCT_ID = b'__ACBP__'
IBBS_STRUCT_ID = b'__IBBS__'
TXTS_STRUCT_ID = b'__TXTS__'
PMSE_STRUCT_ID = b'__PMSG__'
KEYM_STRUCT_ID = b'__KEYM__'

KEY_SIGNATURE_VER = 0x10
KEY_VER           = 0x10
SIGNATURE_VER     = 0x10

# IBB segment flags, bit0 set means the segment is not measured
IBB_SEGMENT_FLAG_SKIP = 0x1

# IBB set types
IBB_SET_STARTUP = 0

# Key Manifest key hash usage bits
KM_USAGE_BPM       = 1 << 0
KM_USAGE_FIT_PATCH = 1 << 1
KM_USAGE_ACM       = 1 << 2
KM_USAGE_SDEV      = 1 << 3
KM_USAGE_PFR       = 1 << 4


def _unpack(fmt, bdata, offset, what):
  size = struct.calcsize(fmt)
  if offset < 0 or offset + size > len(bdata):
    raise errors.TruncatedInputError("{} needs {} bytes at offset {:#x}, {} left".format(
      what, size, offset, max(len(bdata) - offset, 0)))
  return struct.unpack_from(fmt, bdata, offset)


def _read(bdata, offset, size, what):
  if offset + size > len(bdata):
    raise errors.TruncatedInputError("{} needs {} bytes at offset {:#x}, {} left".format(
      what, size, offset, max(len(bdata) - offset, 0)))
  return bytes(bdata[offset:offset + size])


def _to_int(v):
  if isinstance(v, int):
    return v
  try:
    return int(v, 0)
  except ValueError:
    return utility.parse_alg(v)


class Structure(object):
  """ base of all encodable structures

  ``_INT_FIELDS`` and ``_BYTE_FIELDS`` list the attributes that take part in
  equality and in dict conversion. Derived fields such as sizes and offsets
  are left out.
  """
  _INT_FIELDS  = ()
  _BYTE_FIELDS = ()

  def _values(self):
    return tuple(getattr(self, k) for k in self._INT_FIELDS + self._BYTE_FIELDS)

  def __eq__(self, other):
    if type(self) is not type(other):
      return NotImplemented
    return self._values() == other._values()

  def __repr__(self):
    return '{}({})'.format(type(self).__name__, dict(self.to_dict()))

  def to_dict(self):
    d = OrderedDict()
    for k in self._INT_FIELDS:
      d[k] = hex(getattr(self, k))
    for k in self._BYTE_FIELDS:
      d[k] = getattr(self, k).hex()
    return d

  @classmethod
  def from_dict(cls, d):
    self = cls()
    self._load(d)
    return self

  def _load(self, d):
    for k in self._INT_FIELDS:
      if k in d:
        setattr(self, k, _to_int(d[k]))
    for k in self._BYTE_FIELDS:
      if k in d:
        setattr(self, k, bytes.fromhex(d[k]))


class Digest(Structure):
  """ hash structure: hash_alg u16, size u16, buffer """
  _FMT = '<HH'
  _INT_FIELDS  = ('hash_alg',)
  _BYTE_FIELDS = ('buffer',)

  def __init__(self, hash_alg=utility.TPM_ALG_NULL, buffer=b''):
    self.hash_alg = hash_alg
    self.buffer = bytes(buffer)

  @classmethod
  def empty(cls, hash_alg):
    """ zero filled digest of the algorithm's size """
    return cls(hash_alg, bytes(utility.hash_size(hash_alg)))

  @property
  def size(self):
    return struct.calcsize(self._FMT) + len(self.buffer)

  def encode(self):
    return struct.pack(self._FMT, self.hash_alg, len(self.buffer)) + self.buffer

  @classmethod
  def decode(cls, bdata, offset=0):
    (hash_alg, size) = _unpack(cls._FMT, bdata, offset, 'hash structure')
    buf = _read(bdata, offset + struct.calcsize(cls._FMT), size, 'hash buffer')
    return cls(hash_alg, buf), struct.calcsize(cls._FMT) + size

  def __repr__(self):
    return 'Digest({}, {})'.format(utility.alg_name(self.hash_alg), self.buffer.hex())


class DigestList(Structure):
  """ size u16 (whole list), count u16, then count hash structures """
  _FMT = '<HH'

  def __init__(self, digests=None):
    self.digests = list(digests) if digests else []
    utility.check_unique(self.algorithms)

  @property
  def algorithms(self):
    return [d.hash_alg for d in self.digests]

  def get(self, hash_alg):
    for d in self.digests:
      if d.hash_alg == hash_alg:
        return d
    return None

  def _values(self):
    return tuple(self.digests)

  @property
  def size(self):
    return struct.calcsize(self._FMT) + sum(d.size for d in self.digests)

  def encode(self):
    utility.check_unique(self.algorithms)
    return struct.pack(self._FMT, self.size, len(self.digests)) + b''.join(d.encode() for d in self.digests)

  @classmethod
  def decode(cls, bdata, offset=0):
    (size, count) = _unpack(cls._FMT, bdata, offset, 'digest list')
    pos = offset + struct.calcsize(cls._FMT)
    digests = []
    for _ in range(count):
      (d, n) = Digest.decode(bdata, pos)
      digests.append(d)
      pos += n
    if pos - offset != size:
      logger.warning("-- digest list declares {} bytes, holds {}".format(size, pos - offset))
      raise errors.InvalidManifestError("digest list size {} does not match its {} entries".format(size, count))
    return cls(digests), pos - offset

  def to_dict(self):
    return [d.to_dict() for d in self.digests]

  @classmethod
  def from_dict(cls, lst):
    return cls([Digest.from_dict(d) for d in lst])

  def __repr__(self):
    return 'DigestList({})'.format(self.digests)


class IBBSegment(Structure):
  """ rsvd u16, flags u16, base u32, size u32 """
  _FMT = '<HHII'
  _INT_FIELDS = ('rsvd', 'flags', 'base', 'size')

  def __init__(self, base=0, size=0, flags=0, rsvd=0):
    self.rsvd = rsvd
    self.flags = flags
    self.base = base
    self.size = size

  @property
  def hashed(self):
    return not (self.flags & IBB_SEGMENT_FLAG_SKIP)

  def encode(self):
    return struct.pack(self._FMT, self.rsvd, self.flags, self.base, self.size)

  @classmethod
  def decode(cls, bdata, offset=0):
    (rsvd, flags, base, size) = _unpack(cls._FMT, bdata, offset, 'IBB segment')
    return cls(base, size, flags, rsvd), struct.calcsize(cls._FMT)


def _encode_segments(segments):
  return b''.join(s.encode() for s in segments)


def _decode_segments(bdata, pos, count):
  segments = []
  for _ in range(count):
    (seg, n) = IBBSegment.decode(bdata, pos)
    segments.append(seg)
    pos += n
  return segments, pos


class Key(Structure):
  """ public key descriptor: key_alg u16, version u8, key_size u16 (bits), data

  RSA data is exponent u32 followed by the little-endian modulus,
  ECC data is X then Y, each little-endian.
  """
  _FMT = '<HBH'
  _INT_FIELDS  = ('key_alg', 'version', 'key_size')
  _BYTE_FIELDS = ('data',)

  def __init__(self, key_alg=0, key_size=0, data=b'', version=KEY_VER):
    self.key_alg = key_alg
    self.version = version
    self.key_size = key_size
    self.data = bytes(data)

  @staticmethod
  def data_size(key_alg, key_size):
    nbytes = (key_size + 7) // 8
    if key_alg in (0, utility.TPM_ALG_NULL):
      return 0
    if key_alg == utility.TPM_ALG_RSA:
      return nbytes + 4
    if key_alg in (utility.TPM_ALG_ECC, utility.TPM_ALG_SM2):
      return 2 * nbytes
    raise errors.InvalidManifestError("unknown key algorithm {:#x}".format(key_alg))

  @property
  def populated(self):
    return self.key_alg not in (0, utility.TPM_ALG_NULL)

  def encode(self):
    if len(self.data) != self.data_size(self.key_alg, self.key_size):
      raise errors.InvalidManifestError("{} key of {} bits needs {} bytes of data, has {}".format(
        utility.alg_name(self.key_alg), self.key_size,
        self.data_size(self.key_alg, self.key_size), len(self.data)))
    return struct.pack(self._FMT, self.key_alg, self.version, self.key_size) + self.data

  @classmethod
  def decode(cls, bdata, offset=0):
    (key_alg, version, key_size) = _unpack(cls._FMT, bdata, offset, 'key')
    n = cls.data_size(key_alg, key_size)
    data = _read(bdata, offset + struct.calcsize(cls._FMT), n, 'key data')
    return cls(key_alg, key_size, data, version), struct.calcsize(cls._FMT) + n


class Signature(Structure):
  """ signature descriptor: sig_scheme u16, version u8, key_size u16, hash_alg u16, data

  RSA signatures are stored byte reversed, ECDSA/SM2 as R then S, each
  little-endian.
  """
  _FMT = '<HBHH'
  _INT_FIELDS  = ('sig_scheme', 'version', 'key_size', 'hash_alg')
  _BYTE_FIELDS = ('data',)

  def __init__(self, sig_scheme=0, key_size=0, hash_alg=0, data=b'', version=SIGNATURE_VER):
    self.sig_scheme = sig_scheme
    self.version = version
    self.key_size = key_size
    self.hash_alg = hash_alg
    self.data = bytes(data)

  @staticmethod
  def data_size(sig_scheme, key_size):
    nbytes = (key_size + 7) // 8
    if sig_scheme in (0, utility.TPM_ALG_NULL):
      return 0
    if sig_scheme in (utility.TPM_ALG_RSASSA, utility.TPM_ALG_RSAPSS):
      return nbytes
    if sig_scheme in (utility.TPM_ALG_ECDSA, utility.TPM_ALG_SM2):
      return 2 * nbytes
    raise errors.InvalidManifestError("unknown signature scheme {:#x}".format(sig_scheme))

  def encode(self):
    if len(self.data) != self.data_size(self.sig_scheme, self.key_size):
      raise errors.InvalidManifestError("{} signature of {} bits needs {} bytes, has {}".format(
        utility.alg_name(self.sig_scheme), self.key_size,
        self.data_size(self.sig_scheme, self.key_size), len(self.data)))
    return struct.pack(self._FMT, self.sig_scheme, self.version, self.key_size, self.hash_alg) + self.data

  @classmethod
  def decode(cls, bdata, offset=0):
    (sig_scheme, version, key_size, hash_alg) = _unpack(cls._FMT, bdata, offset, 'signature')
    n = cls.data_size(sig_scheme, key_size)
    data = _read(bdata, offset + struct.calcsize(cls._FMT), n, 'signature data')
    return cls(sig_scheme, key_size, hash_alg, data, version), struct.calcsize(cls._FMT) + n


class KeySignature(Structure):
  """ version u8, Key, Signature """
  _FMT = '<B'
  _INT_FIELDS = ('version',)

  def __init__(self, key=None, signature=None, version=KEY_SIGNATURE_VER):
    self.version = version
    self.key = key if key is not None else Key()
    self.signature = signature if signature is not None else Signature()

  def _values(self):
    return (self.version, self.key, self.signature)

  def encode(self):
    return struct.pack(self._FMT, self.version) + self.key.encode() + self.signature.encode()

  @classmethod
  def decode(cls, bdata, offset=0):
    (version,) = _unpack(cls._FMT, bdata, offset, 'key signature')
    pos = offset + struct.calcsize(cls._FMT)
    (key, n) = Key.decode(bdata, pos)
    pos += n
    (sig, n) = Signature.decode(bdata, pos)
    pos += n
    return cls(key, sig, version), pos - offset

  def to_dict(self):
    d = super().to_dict()
    d['key'] = self.key.to_dict()
    d['signature'] = self.signature.to_dict()
    return d

  def _load(self, d):
    super()._load(d)
    if 'key' in d:
      self.key = Key.from_dict(d['key'])
    if 'signature' in d:
      self.signature = Signature.from_dict(d['signature'])


class KeyHash(Structure):
  """ usage u64 bitmask followed by a hash structure """
  _FMT = '<Q'
  _INT_FIELDS = ('usage',)

  def __init__(self, usage=0, digest=None):
    self.usage = usage
    self.digest = digest if digest is not None else Digest()

  def _values(self):
    return (self.usage, self.digest)

  def encode(self):
    return struct.pack(self._FMT, self.usage) + self.digest.encode()

  @classmethod
  def decode(cls, bdata, offset=0):
    (usage,) = _unpack(cls._FMT, bdata, offset, 'key hash')
    (digest, n) = Digest.decode(bdata, offset + struct.calcsize(cls._FMT))
    return cls(usage, digest), struct.calcsize(cls._FMT) + n

  def to_dict(self):
    d = super().to_dict()
    d['digest'] = self.digest.to_dict()
    return d

  def _load(self, d):
    super()._load(d)
    if 'digest' in d:
      self.digest = Digest.from_dict(d['digest'])


class Element(Structure):
  """ base of structures framed by a structure info header

  ``SIZED`` elements carry their encoded length in ``element_size`` and the
  decoder stops exactly there. For the others the field is reserved and kept
  as ``rsvd_size``.
  """
  STRUCT_ID  = None
  STRUCT_VER = 0
  VAR0       = 0
  SIZED      = True
  _INT_FIELDS = ('struct_ver', 'var0')

  def __init__(self):
    self.struct_ver = self.STRUCT_VER
    self.var0 = self.VAR0
    self.rsvd_size = 0

  def _body(self):
    raise NotImplementedError

  def _parse(self, bdata, pos):
    raise NotImplementedError

  def encode(self):
    body = self._body()
    size = STRUCTINFO_SIZE + len(body) if self.SIZED else self.rsvd_size
    if size > 0xFFFF:
      raise errors.InvalidManifestError("{} element of {} bytes is too large".format(self.STRUCT_ID.decode(), size))
    return struct.pack(_STRUCTINFO_FMT, self.STRUCT_ID, self.struct_ver, self.var0, size) + body

  @classmethod
  def decode(cls, bdata, offset=0):
    info = dict(zip(_STRUCTINFO_KEYS, _unpack(_STRUCTINFO_FMT, bdata, offset, 'structure info')))
    if info['struct_id'] != cls.STRUCT_ID:
      raise errors.InvalidManifestError("expect {} at offset {:#x}, found {}".format(
        cls.STRUCT_ID, offset, info['struct_id']))
    self = cls()
    self.struct_ver = info['struct_ver']
    self.var0 = info['var0']
    end = None
    if cls.SIZED:
      end = offset + info['element_size']
      if info['element_size'] < STRUCTINFO_SIZE:
        raise errors.InvalidManifestError("{} declares impossible size {}".format(cls.STRUCT_ID.decode(), info['element_size']))
      if end > len(bdata):
        raise errors.TruncatedInputError("{} declares {} bytes at offset {:#x}, {} left".format(
          cls.STRUCT_ID.decode(), info['element_size'], offset, len(bdata) - offset))
      bdata = bdata[:end]
    else:
      self.rsvd_size = info['element_size']
    try:
      pos = self._parse(bdata, offset + STRUCTINFO_SIZE)
    except errors.TruncatedInputError as e:
      if end is None:
        raise
      raise errors.InvalidManifestError("{} content overruns its declared size: {}".format(
        cls.STRUCT_ID.decode(), e)) from None
    if end is not None and pos != end:
      logger.warning("-- {} declares {} bytes, content is {}".format(
        cls.STRUCT_ID.decode(), end - offset, pos - offset))
      raise errors.InvalidManifestError("{} element size mismatch".format(cls.STRUCT_ID.decode()))
    return self, pos - offset


class BPMHeader(Element):
  """ Boot Policy Manifest header

  ``key_signature_offset`` is filled by the assembler and is not part of
  equality.
  """
  STRUCT_ID  = BPMH_STRUCT_ID
  STRUCT_VER = 0x23
  VAR0       = 0x20
  _FMT = '<HBBBBH'
  _INT_FIELDS = Element._INT_FIELDS + ('bpm_revision', 'bpm_svn', 'acm_svn_auth', 'rsvd0', 'nem_pages')

  def __init__(self, bpm_revision=0, bpm_svn=0, acm_svn_auth=0, nem_pages=0, rsvd0=0):
    super().__init__()
    self.key_signature_offset = 0
    self.bpm_revision = bpm_revision
    self.bpm_svn = bpm_svn
    self.acm_svn_auth = acm_svn_auth
    self.rsvd0 = rsvd0
    self.nem_pages = nem_pages

  def _body(self):
    return struct.pack(self._FMT, self.key_signature_offset, self.bpm_revision, self.bpm_svn,
                       self.acm_svn_auth, self.rsvd0, self.nem_pages)

  def _parse(self, bdata, pos):
    (self.key_signature_offset, self.bpm_revision, self.bpm_svn,
     self.acm_svn_auth, self.rsvd0, self.nem_pages) = _unpack(self._FMT, bdata, pos, 'BPM header')
    return pos + struct.calcsize(self._FMT)


class IBBElement(Element):
  """ Initial Boot Block element

  Fixed fields, PostIBBHash, entry point, IBB digest list, OBBHash, then the
  list of IBB segments.
  """
  STRUCT_ID  = IBBS_STRUCT_ID
  STRUCT_VER = 0x20
  _FMT = '<BBBBIQQIIQQ'
  _KEYS = ('rsvd0', 'set_type', 'rsvd1', 'pbet_value', 'flags', 'mch_bar', 'vtd_bar',
           'dma_prot_base0', 'dma_prot_limit0', 'dma_prot_base1', 'dma_prot_limit1')
  _INT_FIELDS  = Element._INT_FIELDS + _KEYS + ('entry_point',)
  _BYTE_FIELDS = ('rsvd2',)

  def __init__(self, set_type=IBB_SET_STARTUP, segments=None, digest_list=None, **kwargs):
    super().__init__()
    for k in self._KEYS:
      setattr(self, k, 0)
    self.set_type = set_type
    self.entry_point = 0
    self.post_ibb_hash = Digest()
    self.digest_list = digest_list if digest_list is not None else DigestList()
    self.obb_hash = Digest()
    self.rsvd2 = bytes(3)
    self.segments = list(segments) if segments else []
    for (k, v) in kwargs.items():
      if k not in self._INT_FIELDS:
        raise TypeError("unexpected IBB element field '{}'".format(k))
      setattr(self, k, v)

  def _values(self):
    return super()._values() + (self.post_ibb_hash, self.digest_list, self.obb_hash, tuple(self.segments))

  def _body(self):
    if not self.segments:
      raise errors.InvalidManifestError("IBB element needs at least one segment")
    return (struct.pack(self._FMT, *[getattr(self, k) for k in self._KEYS]) +
            self.post_ibb_hash.encode() +
            struct.pack('<I', self.entry_point) +
            self.digest_list.encode() +
            self.obb_hash.encode() +
            self.rsvd2 +
            struct.pack('<B', len(self.segments)) +
            _encode_segments(self.segments))

  def _parse(self, bdata, pos):
    for (k, v) in zip(self._KEYS, _unpack(self._FMT, bdata, pos, 'IBB element')):
      setattr(self, k, v)
    pos += struct.calcsize(self._FMT)
    (self.post_ibb_hash, n) = Digest.decode(bdata, pos)
    pos += n
    (self.entry_point,) = _unpack('<I', bdata, pos, 'IBB entry point')
    pos += 4
    (self.digest_list, n) = DigestList.decode(bdata, pos)
    pos += n
    (self.obb_hash, n) = Digest.decode(bdata, pos)
    pos += n
    self.rsvd2 = _read(bdata, pos, 3, 'IBB reserved')
    pos += 3
    (count,) = _unpack('<B', bdata, pos, 'IBB segment count')
    pos += 1
    if count == 0:
      raise errors.InvalidManifestError("IBB element without segments")
    (self.segments, pos) = _decode_segments(bdata, pos, count)
    return pos

  def to_dict(self):
    d = super().to_dict()
    d['post_ibb_hash'] = self.post_ibb_hash.to_dict()
    d['digest_list'] = self.digest_list.to_dict()
    d['obb_hash'] = self.obb_hash.to_dict()
    d['segments'] = [s.to_dict() for s in self.segments]
    return d

  def _load(self, d):
    super()._load(d)
    if 'post_ibb_hash' in d:
      self.post_ibb_hash = Digest.from_dict(d['post_ibb_hash'])
    if 'digest_list' in d:
      self.digest_list = DigestList.from_dict(d['digest_list'])
    if 'obb_hash' in d:
      self.obb_hash = Digest.from_dict(d['obb_hash'])
    if 'segments' in d:
      self.segments = [IBBSegment.from_dict(s) for s in d['segments']]


class TXTElement(Element):
  """ TXT element """
  STRUCT_ID  = TXTS_STRUCT_ID
  STRUCT_VER = 0x21
  _FMT = '<BBBBIHBBHHI'
  _KEYS = ('rsvd0', 'set_type', 'sinit_min_svn_auth', 'rsvd1', 'control_flags', 'pwr_down_interval',
           'ptt_cmos_offset0', 'ptt_cmos_offset1', 'acpi_base_offset', 'rsvd2', 'pwrm_base_offset')
  _INT_FIELDS  = Element._INT_FIELDS + _KEYS
  _BYTE_FIELDS = ('rsvd3',)

  def __init__(self, digest_list=None, segments=None, **kwargs):
    super().__init__()
    for k in self._KEYS:
      setattr(self, k, 0)
    self.ptt_cmos_offset0 = 126
    self.ptt_cmos_offset1 = 127
    self.acpi_base_offset = 0x400
    self.pwrm_base_offset = 0xFE000000
    self.digest_list = digest_list if digest_list is not None else DigestList()
    self.rsvd3 = bytes(3)
    self.segments = list(segments) if segments else []
    for (k, v) in kwargs.items():
      if k not in self._INT_FIELDS:
        raise TypeError("unexpected TXT element field '{}'".format(k))
      setattr(self, k, v)

  def _values(self):
    return super()._values() + (self.digest_list, tuple(self.segments))

  def _body(self):
    return (struct.pack(self._FMT, *[getattr(self, k) for k in self._KEYS]) +
            self.digest_list.encode() +
            self.rsvd3 +
            struct.pack('<B', len(self.segments)) +
            _encode_segments(self.segments))

  def _parse(self, bdata, pos):
    for (k, v) in zip(self._KEYS, _unpack(self._FMT, bdata, pos, 'TXT element')):
      setattr(self, k, v)
    pos += struct.calcsize(self._FMT)
    (self.digest_list, n) = DigestList.decode(bdata, pos)
    pos += n
    self.rsvd3 = _read(bdata, pos, 3, 'TXT reserved')
    pos += 3
    (count,) = _unpack('<B', bdata, pos, 'TXT segment count')
    pos += 1
    (self.segments, pos) = _decode_segments(bdata, pos, count)
    return pos

  def to_dict(self):
    d = super().to_dict()
    d['digest_list'] = self.digest_list.to_dict()
    d['segments'] = [s.to_dict() for s in self.segments]
    return d

  def _load(self, d):
    super()._load(d)
    if 'digest_list' in d:
      self.digest_list = DigestList.from_dict(d['digest_list'])
    if 'segments' in d:
      self.segments = [IBBSegment.from_dict(s) for s in d['segments']]


class SignatureElement(Element):
  """ Boot Policy Manifest signature element (PMSE)

  ``key_signature`` is None when the signature block has been cut off, which
  is how a truncated BPM decodes.
  """
  STRUCT_ID  = PMSE_STRUCT_ID
  STRUCT_VER = 0x20
  SIZED      = False
  _INT_FIELDS = Element._INT_FIELDS + ('rsvd_size',)

  def __init__(self, key_signature=None):
    super().__init__()
    self.key_signature = key_signature if key_signature is not None else KeySignature()

  def _values(self):
    return super()._values() + (self.key_signature,)

  def _body(self):
    if self.key_signature is None:
      return b''
    return self.key_signature.encode()

  def _parse(self, bdata, pos):
    if pos == len(bdata):
      logger.debug("-- PMSE without key signature at {:#x}".format(pos))
      self.key_signature = None
      return pos
    (self.key_signature, n) = KeySignature.decode(bdata, pos)
    return pos + n

  def to_dict(self):
    d = super().to_dict()
    d['key_signature'] = self.key_signature.to_dict() if self.key_signature is not None else None
    return d

  def _load(self, d):
    super()._load(d)
    if 'key_signature' in d:
      ks = d['key_signature']
      self.key_signature = KeySignature.from_dict(ks) if ks is not None else None


class KeyManifestBody(Element):
  """ Key Manifest body, everything in front of the KM key signature

  After the structure info: key_signature_offset u16, rsvd 3 bytes, revision,
  km_svn, km_id, pubkey_hash_alg u16, count u16 and the key hashes.
  """
  STRUCT_ID  = KEYM_STRUCT_ID
  STRUCT_VER = 0x21
  SIZED      = False
  _FMT = '<H3sBBBHH'
  _INT_FIELDS  = Element._INT_FIELDS + ('rsvd_size', 'revision', 'km_svn', 'km_id', 'pubkey_hash_alg')
  _BYTE_FIELDS = ('rsvd2',)

  def __init__(self, revision=0, km_svn=0, km_id=0, pubkey_hash_alg=utility.TPM_ALG_SHA256, hashes=None):
    super().__init__()
    self.key_signature_offset = 0
    self.rsvd2 = bytes(3)
    self.revision = revision
    self.km_svn = km_svn
    self.km_id = km_id
    self.pubkey_hash_alg = pubkey_hash_alg
    self.hashes = list(hashes) if hashes else []

  def _values(self):
    return super()._values() + (tuple(self.hashes),)

  def _body(self):
    hashes = b''.join(h.encode() for h in self.hashes)
    self.key_signature_offset = STRUCTINFO_SIZE + struct.calcsize(self._FMT) + len(hashes)
    return struct.pack(self._FMT, self.key_signature_offset, self.rsvd2, self.revision, self.km_svn,
                       self.km_id, self.pubkey_hash_alg, len(self.hashes)) + hashes

  def _parse(self, bdata, pos):
    (self.key_signature_offset, self.rsvd2, self.revision, self.km_svn, self.km_id,
     self.pubkey_hash_alg, count) = _unpack(self._FMT, bdata, pos, 'Key Manifest')
    pos += struct.calcsize(self._FMT)
    self.hashes = []
    for _ in range(count):
      (kh, n) = KeyHash.decode(bdata, pos)
      self.hashes.append(kh)
      pos += n
    return pos

  def to_dict(self):
    d = super().to_dict()
    d['hashes'] = [h.to_dict() for h in self.hashes]
    return d

  def _load(self, d):
    super()._load(d)
    if 'hashes' in d:
      self.hashes = [KeyHash.from_dict(h) for h in d['hashes']]


ELEMENT_TYPES = OrderedDict((cls.STRUCT_ID, cls) for cls in
                            (BPMHeader, IBBElement, TXTElement, SignatureElement, KeyManifestBody))


def peek_struct_id(bdata, offset=0):
  """ structure ID at offset, without decoding """
  (struct_id,) = _unpack('<8s', bdata, offset, 'structure ID')
  return struct_id


def encode_element(element):
  """ encode an element to bytes, structure info header included """
  return element.encode()


def decode_element(bdata, offset=0):
  """ decode the element starting at offset

  :param bdata: bytes or bytearray
  :param offset: start of the element's structure info header

  :returns (element, consumed): decoded element and number of bytes it occupies

  """
  struct_id = peek_struct_id(bdata, offset)
  cls = ELEMENT_TYPES.get(struct_id)
  if cls is None:
    logger.warning("-- unknown structure ID {} at offset {:#x}".format(struct_id, offset))
    raise errors.UnsupportedElementError("unknown structure ID {} at offset {:#x}".format(struct_id, offset))
  return cls.decode(bdata, offset)
