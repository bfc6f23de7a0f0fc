#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Recursive digest computation for Boot Guard manifests

  Digests are computed bottom-up over an explicit dependency graph::

    ibb:0 .. ibb:n   -> IBB segment content measured into each digest list
    bpm              -> BPM reserialized, signed region digest recorded
    km               -> KM BPM-key hashes refreshed from the BPM public key,
                        KM reserialized, signed region digest recorded

  Nothing is cached; every call recomputes the whole graph.

  Example::

    >>> from bgprov import digest, utility
    >>> result = digest.rehash_recursive(bpm=bpm, km=km, image=bios,
    ...                                  algorithms=[utility.TPM_ALG_SHA256, utility.TPM_ALG_SHA384])
    >>> list(result)
    ['ibb:0', 'bpm', 'km']

"""
from collections import OrderedDict

import logging
logger = logging.getLogger(__name__)

from bgprov import errors, utility
from bgprov.element import Digest, DigestList, KM_USAGE_BPM
from bgprov.manifest import BootPolicyManifest, KeyManifest

DEFAULT_HASH_ALG = utility.TPM_ALG_SHA256


class DigestGraph(object):
  """ named computations with dependencies, run in dependency order """

  def __init__(self):
    self._nodes = OrderedDict()

  def add(self, name, func, deps=()):
    if name in self._nodes:
      raise ValueError("node '{}' already in graph".format(name))
    self._nodes[name] = (func, tuple(deps))

  def __contains__(self, name):
    return name in self._nodes

  def order(self):
    """ node names with every node after its dependencies """
    done = []
    visiting = []

    def visit(name):
      if name in done:
        return
      if name in visiting:
        raise ValueError("dependency cycle through '{}'".format(name))
      if name not in self._nodes:
        raise ValueError("unknown dependency '{}'".format(name))
      visiting.append(name)
      for dep in self._nodes[name][1]:
        visit(dep)
      visiting.remove(name)
      done.append(name)

    for name in self._nodes:
      visit(name)
    return done

  def walk(self):
    """ run all nodes bottom-up, returns OrderedDict of node results """
    results = OrderedDict()
    for name in self.order():
      logger.debug("-- digest node {}".format(name))
      results[name] = self._nodes[name][0]()
    return results


def key_digest(key, hash_alg):
  """ digest of a public key descriptor's key data """
  if not key.populated:
    raise errors.InvalidManifestError("key is not bound, nothing to hash")
  return utility.get_hash(hash_alg, key.data)


def signed_digest(manifest, hash_alg):
  """ digest of the manifest bytes a signature covers """
  bdata = manifest.assemble()
  return utility.get_hash(hash_alg, bdata[:manifest.signed_region_end])


def km_pubkey_hash(km, hash_alg=None):
  """ hash of the KM signing key, the value fused into the platform """
  if km.key_signature is None:
    raise errors.InvalidManifestError("KM has no key signature")
  hash_alg = km.body.pubkey_hash_alg if hash_alg is None else hash_alg
  return key_digest(km.key_signature.key, hash_alg)


def ibb_content(element, image):
  """ concatenation of the measured segments of an IBB element """
  content = bytearray()
  for seg in element.segments:
    if not seg.hashed:
      continue
    offset = utility.phys_to_offset(seg.base, len(image))
    if offset + seg.size > len(image):
      raise errors.OffsetOutOfRangeError("IBB segment {:#x}+{:#x} runs past the {:#x} bytes image".format(
        seg.base, seg.size, len(image)))
    content += image[offset:offset + seg.size]
  return bytes(content)


def _rehash_ibb(element, image, algorithms):
  algs = list(algorithms) if algorithms is not None else element.digest_list.algorithms
  if not algs:
    algs = [DEFAULT_HASH_ALG]
  utility.check_unique(algs)
  content = ibb_content(element, image)
  element.digest_list = DigestList([Digest(alg, utility.get_hash(alg, content)) for alg in algs])
  return element.digest_list


def _signed_digests(manifest, algorithms):
  if algorithms:
    algs = list(algorithms)
  elif manifest.key_signature is not None and manifest.key_signature.signature.hash_alg in utility.HASH_ALGS:
    algs = [manifest.key_signature.signature.hash_alg]
  else:
    algs = [DEFAULT_HASH_ALG]
  return OrderedDict((alg, signed_digest(manifest, alg)) for alg in algs)


def _rehash_km(km, bpm):
  updated = 0
  for kh in km.body.hashes:
    if not (kh.usage & KM_USAGE_BPM):
      continue
    if bpm.key_signature is None or not bpm.key_signature.key.populated:
      raise errors.InvalidManifestError("KM commits to the BPM key, but the BPM key is not bound")
    kh.digest = Digest(kh.digest.hash_alg, key_digest(bpm.key_signature.key, kh.digest.hash_alg))
    updated += 1
  logger.debug("-- {} KM key hash(es) refreshed from BPM key".format(updated))


def rehash_recursive(bpm=None, km=None, image=None, algorithms=None):
  """ recompute every digest of a BPM and/or KM bottom-up

  :param bpm: BootPolicyManifest, optional
  :param km: KeyManifest, optional
  :param image: BIOS image bytes the IBB segments point into. IBB digests
    are left as they are without it.
  :param algorithms: hash algorithm list, keeps its order. Default reuses the
    algorithms already present.

  :returns results: OrderedDict of node name -> node result

  """
  if algorithms is not None:
    algorithms = [utility.parse_alg(a) for a in algorithms]
    utility.check_unique(algorithms)
  graph = DigestGraph()
  if bpm is not None:
    ibb_nodes = []
    if image is not None:
      for (idx, e) in enumerate(bpm.ibb):
        name = 'ibb:{}'.format(idx)
        graph.add(name, lambda e=e: _rehash_ibb(e, image, algorithms))
        ibb_nodes.append(name)
    else:
      logger.debug("-- no image, IBB digests kept")
    graph.add('bpm', lambda: _signed_digests(bpm, algorithms), ibb_nodes)
  if km is not None:

    def km_node():
      if bpm is not None:
        _rehash_km(km, bpm)
      return _signed_digests(km, algorithms)

    graph.add('km', km_node, ['bpm'] if bpm is not None else [])
  return graph.walk()


def rehash(manifest, image=None, algorithms=None, bpm=None):
  """ recompute digests of one manifest

  :param manifest: BootPolicyManifest or KeyManifest
  :param image: BIOS image for the IBB segments of a BPM
  :param algorithms: hash algorithm list
  :param bpm: BPM whose key a KM commits to, only used for a KM

  """
  if isinstance(manifest, BootPolicyManifest):
    return rehash_recursive(bpm=manifest, image=image, algorithms=algorithms)
  if isinstance(manifest, KeyManifest):
    return rehash_recursive(bpm=bpm, km=manifest, algorithms=algorithms)
  raise TypeError("{} is not a manifest".format(type(manifest).__name__))
