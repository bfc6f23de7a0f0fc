#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
  Error kinds raised by Boot Guard manifest provisioning.

  All of them derive from :class:`BootGuardError` so a caller can catch the
  whole family at once::

    try:
      bios = fit.stitch(bios, bpm=bpm_bytes)
    except errors.FITNotFoundError:
      ...

"""

class BootGuardError(Exception):
  """ base class of all provisioning errors """


class TruncatedInputError(BootGuardError):
  """ input ends before a structure's declared length """


class UnsupportedElementError(BootGuardError):
  """ unknown structure ID """


class InvalidManifestError(BootGuardError):
  """ structurally invalid manifest or element """


class DuplicateAlgorithmError(BootGuardError):
  """ the same hash algorithm requested or stored twice """


class UnsupportedAlgorithmError(BootGuardError):
  """ hash, key or signature algorithm that cannot be computed """


class KeyAlgorithmMismatchError(BootGuardError):
  """ key kind or size disagrees with the bound descriptor """


class OffsetOutOfRangeError(BootGuardError):
  """ offset or address outside the buffer """


class NoPayloadError(BootGuardError):
  """ stitch called without any ACM, KM or BPM """


class FITNotFoundError(BootGuardError):
  """ no valid Firmware Interface Table in the image """


class InsufficientSpaceError(BootGuardError):
  """ no free region for a payload or no room for a new FIT entry """
