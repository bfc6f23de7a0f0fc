#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Key Manifest (KM) and Boot Policy Manifest (BPM) assembler

  A BPM is laid out in a fixed order::

    BPMH | IBBS ... | TXTS (optional) | PMSE

  and a KM is the ``__KEYM__`` body followed by its key signature. The bytes a
  signature covers end where the key signature block starts; that offset is
  written into the manifest and exposed as ``signed_region_end``.

  Example::

    >>> from bgprov import manifest
    >>> bpm = manifest.disassemble(open('bpm.bin', 'rb').read())
    >>> bpm.signed_region_end, bpm.total_length
    (160, 689)
    >>> bpm.assemble() == open('bpm.bin', 'rb').read()
    True

"""
import logging
logger = logging.getLogger(__name__)

from bgprov import errors
from bgprov.element import (BPMHeader, IBBElement, TXTElement, SignatureElement, KeyManifestBody,
                            KeySignature, STRUCTINFO_SIZE, BPMH_STRUCT_ID, KEYM_STRUCT_ID,
                            ELEMENT_TYPES, IBB_SET_STARTUP, decode_element, peek_struct_id)

MAX_OFFSET = 0xFFFF


class BootPolicyManifest(object):
  """ Boot Policy Manifest: header, IBB elements, optional TXT element, signature element """

  def __init__(self, bpmh=None, ibb=None, txt=None, pmse=None):
    self.bpmh = bpmh if bpmh is not None else BPMHeader()
    self.ibb = list(ibb) if ibb else []
    self.txt = txt
    self.pmse = pmse if pmse is not None else SignatureElement()

  @property
  def elements(self):
    """ elements in canonical byte order """
    lst = [self.bpmh] + self.ibb
    if self.txt is not None:
      lst.append(self.txt)
    lst.append(self.pmse)
    return lst

  @property
  def key_signature(self):
    return self.pmse.key_signature

  @key_signature.setter
  def key_signature(self, value):
    self.pmse.key_signature = value

  def validate(self):
    """ check structural rules, raise InvalidManifestError """
    if self.bpmh.nem_pages == 0:
      raise errors.InvalidManifestError("NEM data stack size must not be zero")
    if not self.ibb:
      raise errors.InvalidManifestError("BPM needs at least one IBB element")
    if not any(e.set_type == IBB_SET_STARTUP for e in self.ibb):
      raise errors.InvalidManifestError("BPM has no startup IBB element (set type 0)")
    for (idx, e) in enumerate(self.ibb):
      if not e.segments:
        raise errors.InvalidManifestError("IBB element #{} has no segments".format(idx))

  def _offsets(self):
    """ returns (encoded IBB and TXT elements, offset of the signature element) """
    body = b''.join(e.encode() for e in self.ibb)
    if self.txt is not None:
      body += self.txt.encode()
    pmse_offset = len(self.bpmh.encode()) + len(body)
    return body, pmse_offset

  @property
  def pmse_offset(self):
    return self._offsets()[1]

  @property
  def signed_region_end(self):
    return self.pmse_offset + STRUCTINFO_SIZE

  @property
  def total_length(self):
    return len(self.assemble())

  def assemble(self):
    """ serialize the manifest, key signature offset recomputed

    :returns bdata: manifest bytes
    """
    self.validate()
    (body, pmse_offset) = self._offsets()
    key_signature_offset = pmse_offset + STRUCTINFO_SIZE
    if key_signature_offset > MAX_OFFSET:
      raise errors.InvalidManifestError("BPM too large, key signature at {:#x}".format(key_signature_offset))
    self.bpmh.key_signature_offset = key_signature_offset
    bdata = self.bpmh.encode() + body + self.pmse.encode()
    logger.debug("-- BPM assembled: {} bytes, signed region ends at {:#x}".format(len(bdata), key_signature_offset))
    return bdata


class KeyManifest(object):
  """ Key Manifest: ``__KEYM__`` body and its key signature

  ``key_signature`` is None for a KM whose signature block has been cut off.
  """

  def __init__(self, body=None, key_signature=None):
    self.body = body if body is not None else KeyManifestBody()
    self.key_signature = key_signature if key_signature is not None else KeySignature()

  @property
  def elements(self):
    return [self.body]

  def validate(self):
    seen = []
    for kh in self.body.hashes:
      k = (kh.usage, kh.digest.hash_alg)
      if k in seen:
        raise errors.DuplicateAlgorithmError("KM has two {:#x} hashes for usage {:#x}".format(k[1], k[0]))
      seen.append(k)

  @property
  def signed_region_end(self):
    return len(self.body.encode())

  @property
  def total_length(self):
    return len(self.assemble())

  def assemble(self):
    self.validate()
    bdata = self.body.encode()
    if self.body.key_signature_offset > MAX_OFFSET:
      raise errors.InvalidManifestError("KM too large, key signature at {:#x}".format(self.body.key_signature_offset))
    if self.key_signature is not None:
      bdata += self.key_signature.encode()
    logger.debug("-- KM assembled: {} bytes, signed region ends at {:#x}".format(
      len(bdata), self.body.key_signature_offset))
    return bdata


def build(header, elements):
  """ put a header and its elements into a manifest object

  :param header: BPMHeader or KeyManifestBody
  :param elements: for a BPM, IBB/TXT/signature elements in any order;
    for a KM, an optional single KeySignature

  """
  if isinstance(header, KeyManifestBody):
    if len(elements) > 1:
      raise errors.InvalidManifestError("KM takes one key signature, got {} elements".format(len(elements)))
    km = KeyManifest(header)
    km.key_signature = elements[0] if elements else None
    return km
  if not isinstance(header, BPMHeader):
    raise errors.InvalidManifestError("{} is not a manifest header".format(type(header).__name__))
  bpm = BootPolicyManifest(header)
  pmse = None
  for e in elements:
    if isinstance(e, IBBElement):
      bpm.ibb.append(e)
    elif isinstance(e, TXTElement):
      if bpm.txt is not None:
        raise errors.InvalidManifestError("BPM takes at most one TXT element")
      bpm.txt = e
    elif isinstance(e, SignatureElement):
      if pmse is not None:
        raise errors.InvalidManifestError("BPM takes exactly one signature element")
      pmse = e
    else:
      raise errors.InvalidManifestError("{} does not belong in a BPM".format(type(e).__name__))
  if pmse is None:
    raise errors.InvalidManifestError("BPM needs a signature element")
  bpm.pmse = pmse
  return bpm


def assemble(header, elements):
  """ serialize header and elements in canonical order

  :returns bdata: manifest bytes with derived offsets written
  """
  return build(header, elements).assemble()


def _disassemble_bpm(bdata, strict_order):
  (bpmh, pos) = BPMHeader.decode(bdata, 0)
  bpm = BootPolicyManifest(bpmh)
  pmse = None
  pmse_offset = None
  while pos < len(bdata):
    if pmse is not None:
      raise errors.InvalidManifestError("{} bytes after the signature element".format(len(bdata) - pos))
    (e, n) = decode_element(bdata, pos)
    if isinstance(e, IBBElement):
      if strict_order and bpm.txt is not None:
        logger.warning("-- IBB element at {:#x} follows the TXT element".format(pos))
        raise errors.InvalidManifestError("IBB element at {:#x} after TXT element".format(pos))
      bpm.ibb.append(e)
    elif isinstance(e, TXTElement):
      if bpm.txt is not None:
        raise errors.InvalidManifestError("second TXT element at {:#x}".format(pos))
      bpm.txt = e
    elif isinstance(e, SignatureElement):
      pmse = e
      pmse_offset = pos
    else:
      raise errors.InvalidManifestError("{} element at {:#x} inside BPM".format(e.STRUCT_ID.decode(), pos))
    pos += n
  if pmse is None:
    raise errors.InvalidManifestError("BPM has no signature element")
  bpm.pmse = pmse
  bpm.validate()
  if bpmh.key_signature_offset != pmse_offset + STRUCTINFO_SIZE:
    raise errors.InvalidManifestError("BPM key signature offset {:#x}, expect {:#x}".format(
      bpmh.key_signature_offset, pmse_offset + STRUCTINFO_SIZE))
  return bpm


def _disassemble_km(bdata):
  (body, pos) = KeyManifestBody.decode(bdata, 0)
  if body.key_signature_offset != pos:
    raise errors.InvalidManifestError("KM key signature offset {:#x}, expect {:#x}".format(
      body.key_signature_offset, pos))
  km = KeyManifest(body)
  km.validate()
  if pos == len(bdata):
    logger.debug("-- KM without key signature")
    km.key_signature = None
    return km
  (km.key_signature, n) = KeySignature.decode(bdata, pos)
  pos += n
  if pos != len(bdata):
    raise errors.InvalidManifestError("{} bytes after KM key signature".format(len(bdata) - pos))
  return km


def disassemble(bdata, strict_order=False):
  """ parse manifest bytes

  :param bdata: KM or BPM bytes, signed or truncated at ``signed_region_end``
  :param strict_order: require all IBB elements in front of the TXT element

  :returns manifest: BootPolicyManifest or KeyManifest

  """
  struct_id = peek_struct_id(bdata, 0)
  if struct_id == KEYM_STRUCT_ID:
    return _disassemble_km(bdata)
  if struct_id == BPMH_STRUCT_ID:
    return _disassemble_bpm(bdata, strict_order)
  if struct_id in ELEMENT_TYPES:
    raise errors.InvalidManifestError("manifest starts with {} instead of a header".format(struct_id))
  raise errors.UnsupportedElementError("unknown manifest structure ID {}".format(struct_id))
