#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Boot Guard options: reusable KM/BPM configuration and generation

  Options are stored as JSON with hex string values, the same way as the
  other manifest JSON files of this package::

    {
      "bpm": {"bpmh": {"bpm_revision": "0x1", "nem_pages": "0x3", ...},
              "ibb": [{"set_type": "0x0", "segments": [...], ...}],
              "txt": {...}, "pmse": {...}},
      "km":  {"body": {"km_id": "0x1", "hashes": [...], ...}, "key_signature": {...}}
    }

  Typical flow::

    >>> from bgprov import config, sign, fit
    >>> options = config.template(revision=1, nems=3, ibbsegbase=0xFFFF0000, ibbsegsize=0x10000)
    >>> bpm = config.generate_bpm(options, bios)
    >>> km = config.generate_km(options, km_key, bpm_public_key=bpm_key)
    >>> bpm_bytes = sign.sign_manifest(bpm, bpm_key)
    >>> km_bytes = sign.sign_manifest(km, km_key)
    >>> new_bios = fit.stitch(bios, km=km_bytes, bpm=bpm_bytes)

"""
import json, copy
from collections import OrderedDict

import logging
logger = logging.getLogger(__name__)

from bgprov import errors, utility, digest, sign, fit, manifest
from bgprov.element import (BPMHeader, IBBElement, TXTElement, SignatureElement, IBBSegment,
                            KeyManifestBody, KeyHash, KeySignature, Digest, DigestList, KM_USAGE_BPM)
from bgprov.manifest import BootPolicyManifest, KeyManifest

DEFAULT_NEM_PAGES = 3
DEFAULT_IBB_SEGMENT_BASE = 0xFFFF0000
DEFAULT_IBB_SEGMENT_SIZE = 0x10000
DEFAULT_HASH_ALG = utility.TPM_ALG_SHA256


class BootGuardOptions(object):
  """ configuration of one BPM and one KM """

  def __init__(self, bpm=None, km=None):
    self.bpm = bpm
    self.km = km

  def to_dict(self):
    d = OrderedDict()
    d['bpm'] = _bpm_to_dict(self.bpm) if self.bpm is not None else None
    d['km'] = _km_to_dict(self.km) if self.km is not None else None
    return d

  @classmethod
  def from_dict(cls, d):
    bpm = _bpm_from_dict(d['bpm']) if d.get('bpm') is not None else None
    km = _km_from_dict(d['km']) if d.get('km') is not None else None
    return cls(bpm, km)

  def to_json(self):
    return json.dumps(self.to_dict(), indent=4)

  @classmethod
  def from_json(cls, s):
    return cls.from_dict(json.loads(s, object_pairs_hook=OrderedDict))

  @classmethod
  def read_config(cls, fname):
    """ load options from a JSON file """
    with open(fname, 'r') as f:
      return cls.from_dict(json.load(f, object_pairs_hook=OrderedDict))

  def write_config(self, fname):
    """ save options to a JSON file """
    with open(fname, 'w') as f:
      json.dump(self.to_dict(), f, indent=4)
    logger.info("-- options written to {}".format(fname))


def _bpm_to_dict(bpm):
  d = OrderedDict()
  d['bpmh'] = bpm.bpmh.to_dict()
  d['ibb'] = [e.to_dict() for e in bpm.ibb]
  d['txt'] = bpm.txt.to_dict() if bpm.txt is not None else None
  d['pmse'] = bpm.pmse.to_dict()
  return d


def _bpm_from_dict(d):
  bpm = BootPolicyManifest(BPMHeader.from_dict(d.get('bpmh', {})),
                           [IBBElement.from_dict(e) for e in d.get('ibb', [])])
  if d.get('txt') is not None:
    bpm.txt = TXTElement.from_dict(d['txt'])
  if d.get('pmse') is not None:
    bpm.pmse = SignatureElement.from_dict(d['pmse'])
  return bpm


def _km_to_dict(km):
  d = OrderedDict()
  d['body'] = km.body.to_dict()
  d['key_signature'] = km.key_signature.to_dict() if km.key_signature is not None else None
  return d


def _km_from_dict(d):
  km = KeyManifest(KeyManifestBody.from_dict(d.get('body', {})))
  ks = d.get('key_signature')
  km.key_signature = KeySignature.from_dict(ks) if ks is not None else KeySignature()
  return km


def default_options():
  """ options with one startup IBB element, a TXT element and unsigned KM/BPM """
  seg = IBBSegment(DEFAULT_IBB_SEGMENT_BASE, DEFAULT_IBB_SEGMENT_SIZE)
  ibb = IBBElement(segments=[seg], digest_list=DigestList([Digest.empty(DEFAULT_HASH_ALG)]))
  bpm = BootPolicyManifest(BPMHeader(nem_pages=DEFAULT_NEM_PAGES), [ibb], TXTElement(), SignatureElement())
  body = KeyManifestBody(pubkey_hash_alg=DEFAULT_HASH_ALG,
                         hashes=[KeyHash(KM_USAGE_BPM, Digest.empty(DEFAULT_HASH_ALG))])
  return BootGuardOptions(bpm, KeyManifest(body))


def _bpmh(bpm):
  return bpm.bpmh


def _ibb0(bpm):
  if not bpm.ibb:
    bpm.ibb.append(IBBElement())
  return bpm.ibb[0]


def _seg0(bpm):
  ibb = _ibb0(bpm)
  if not ibb.segments:
    ibb.segments.append(IBBSegment())
  return ibb.segments[0]


def _txt(bpm):
  if bpm.txt is None:
    bpm.txt = TXTElement()
  return bpm.txt


# option name -> (structure getter, attribute)
BPM_OPTIONS = OrderedDict([
  ('revision',          (_bpmh, 'bpm_revision')),
  ('svn',               (_bpmh, 'bpm_svn')),
  ('acmsvn',            (_bpmh, 'acm_svn_auth')),
  ('nems',              (_bpmh, 'nem_pages')),
  ('pbet',              (_ibb0, 'pbet_value')),
  ('ibbflags',          (_ibb0, 'flags')),
  ('mchbar',            (_ibb0, 'mch_bar')),
  ('vdtbar',            (_ibb0, 'vtd_bar')),
  ('dmabase0',          (_ibb0, 'dma_prot_base0')),
  ('dmasize0',          (_ibb0, 'dma_prot_limit0')),
  ('dmabase1',          (_ibb0, 'dma_prot_base1')),
  ('dmasize1',          (_ibb0, 'dma_prot_limit1')),
  ('entrypoint',        (_ibb0, 'entry_point')),
  ('ibbsegbase',        (_seg0, 'base')),
  ('ibbsegsize',        (_seg0, 'size')),
  ('ibbsegflag',        (_seg0, 'flags')),
  ('sintmin',           (_txt,  'sinit_min_svn_auth')),
  ('txtflags',          (_txt,  'control_flags')),
  ('powerdowninterval', (_txt,  'pwr_down_interval')),
  ('acpibaseoffset',    (_txt,  'acpi_base_offset')),
  ('powermbaseoffset',  (_txt,  'pwrm_base_offset')),
  ('cmosoff0',          (_txt,  'ptt_cmos_offset0')),
  ('cmosoff1',          (_txt,  'ptt_cmos_offset1')),
])

KM_OPTIONS = OrderedDict([
  ('revision',  'revision'),
  ('svn',       'km_svn'),
  ('id',        'km_id'),
  ('pkhashalg', 'pubkey_hash_alg'),
])


def _int(v):
  return int(v, 0) if isinstance(v, str) else int(v)


def _alg_list(value):
  if isinstance(value, (int, str)):
    value = [value]
  algs = [utility.parse_alg(a) for a in value]
  utility.check_unique(algs)
  return algs


def apply_bpm_overrides(bpm, **options):
  """ set BPM fields by option name, options given as None are skipped

  ``ibbhash`` takes a list of hash algorithms for the first IBB digest list.
  """
  for (k, v) in options.items():
    if v is None:
      continue
    if k == 'ibbhash':
      _ibb0(bpm).digest_list = DigestList([Digest.empty(a) for a in _alg_list(v)])
    elif k in BPM_OPTIONS:
      (getter, attr) = BPM_OPTIONS[k]
      setattr(getter(bpm), attr, _int(v))
    else:
      raise ValueError("unknown BPM option '{}'".format(k))
    logger.debug("-- BPM option {} = {}".format(k, v))
  return bpm


def apply_km_overrides(km, **options):
  """ set KM fields by option name, options given as None are skipped

  ``kmhashes`` replaces the key hash list (KeyHash objects or dicts),
  ``bpmpubkey`` sets the BPM key hash from a public key, hashed with
  ``bpmhashalgo`` (SHA256 by default).
  """
  bpm_hash_alg = options.pop('bpmhashalgo', None)
  bpm_hash_alg = utility.parse_alg(bpm_hash_alg) if bpm_hash_alg is not None else None
  for (k, v) in options.items():
    if v is None:
      continue
    if k in KM_OPTIONS:
      value = utility.parse_alg(v) if k == 'pkhashalg' else _int(v)
      setattr(km.body, KM_OPTIONS[k], value)
    elif k == 'kmhashes':
      km.body.hashes = [h if isinstance(h, KeyHash) else KeyHash.from_dict(h) for h in v]
    elif k == 'bpmpubkey':
      continue
    else:
      raise ValueError("unknown KM option '{}'".format(k))
    logger.debug("-- KM option {} = {}".format(k, v))

  if options.get('bpmpubkey') is not None:
    alg = bpm_hash_alg if bpm_hash_alg is not None else DEFAULT_HASH_ALG
    value = digest.key_digest(sign.public_key_data(options['bpmpubkey']), alg)
    km.body.hashes = [kh for kh in km.body.hashes
                      if not (kh.usage == KM_USAGE_BPM and kh.digest.hash_alg == alg)]
    km.body.hashes.insert(0, KeyHash(KM_USAGE_BPM, Digest(alg, value)))
    logger.info("-- KM commits to BPM key {}".format(value.hex()))
  elif bpm_hash_alg is not None:
    for kh in km.body.hashes:
      if kh.usage & KM_USAGE_BPM:
        kh.digest = Digest.empty(bpm_hash_alg)
  return km


def template(**options):
  """ default options updated with BPM options """
  opts = default_options()
  apply_bpm_overrides(opts.bpm, **options)
  return opts


def generate_bpm(options, bios, algorithms=None, **overrides):
  """ build a BPM from options and measure its IBB segments in the image

  :param options: BootGuardOptions, left unchanged
  :param bios: BIOS image bytes
  :param algorithms: IBB hash algorithms, default keeps those of the options
  :param overrides: BPM options, see BPM_OPTIONS

  :returns bpm: BootPolicyManifest
  """
  if options.bpm is None:
    raise errors.InvalidManifestError("options carry no BPM")
  bpm = copy.deepcopy(options.bpm)
  apply_bpm_overrides(bpm, **overrides)
  digest.rehash(bpm, image=bios, algorithms=algorithms)
  bpm.assemble()
  logger.info("-- BPM generated, {} bytes".format(bpm.total_length))
  return bpm


def generate_km(options, km_public_key, bpm_public_key=None, bpm_hash_alg=DEFAULT_HASH_ALG, **overrides):
  """ build a KM from options

  :param options: BootGuardOptions, left unchanged
  :param km_public_key: key that will sign the KM, bound into its key signature
  :param bpm_public_key: key that will sign the BPM, optional
  :param bpm_hash_alg: hash algorithm of the BPM key hash
  :param overrides: KM options, see KM_OPTIONS

  :returns km: KeyManifest
  """
  if options.km is None:
    raise errors.InvalidManifestError("options carry no KM")
  km = copy.deepcopy(options.km)
  apply_km_overrides(km, bpmpubkey=bpm_public_key, bpmhashalgo=bpm_hash_alg if bpm_public_key is not None else None,
                     **overrides)
  km.key_signature = sign.bind_key(km.key_signature, km_public_key)
  km.assemble()
  logger.info("-- KM generated, {} bytes".format(km.total_length))
  return km


def read_config_from_bios(bios, strict_order=False):
  """ options of the KM and BPM a BIOS image carries

  The BPM is required, a missing KM entry leaves ``km`` as None.
  """
  bpm = manifest.disassemble(fit.extract(bios, fit.FIT_TYPE_BOOT_POLICY_MANIFEST), strict_order)
  try:
    km = manifest.disassemble(fit.extract(bios, fit.FIT_TYPE_KEY_MANIFEST))
  except errors.FITNotFoundError:
    logger.warning("-- no Key Manifest in FIT")
    km = None
  return BootGuardOptions(bpm, km)
