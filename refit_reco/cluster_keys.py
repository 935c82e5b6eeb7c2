from __future__ import annotations

from enum import IntEnum

__all__ = [
    "TrkrId",
    "make_hitset_key",
    "make_cluster_key",
    "hitset_key",
    "trkr_id",
    "layer",
    "cluster_index",
    "SILICON_IDS",
    "TPC_LAYERS",
]


class TrkrId(IntEnum):
    """Tracking subsystem identifiers encoded in the upper bits of a key."""
    MVTX = 1
    INTT = 2
    TPC = 3
    MICROMEGAS = 4


SILICON_IDS = frozenset({TrkrId.MVTX, TrkrId.INTT})

# TPC readout layers (three modules of 16 layers each)
TPC_LAYERS = range(7, 55)

_TRKR_SHIFT = 24
_LAYER_SHIFT = 16
_CLUSTER_SHIFT = 32
_BYTE = 0xFF
_WORD = 0xFFFFFFFF


def make_hitset_key(detector: int, layer_id: int, extra: int = 0) -> int:
    r"""
    Pack a 32-bit hitset key.

    Bit layout (most significant first)::

        [ trkr id : 8 ][ layer : 8 ][ detector specific : 16 ]

    Parameters
    ----------
    detector : int
        Subsystem id (see :class:`TrkrId`).
    layer_id : int
        Global tracking layer number, ``0 <= layer_id < 256``.
    extra : int, optional
        Subsystem-specific bits (stave, ladder, sector, ...).

    Returns
    -------
    int
        The packed hitset key.

    Raises
    ------
    ValueError
        If a field does not fit in its bit range.
    """
    if not (0 <= int(detector) <= _BYTE):
        raise ValueError(f"detector id out of range: {detector}")
    if not (0 <= int(layer_id) <= _BYTE):
        raise ValueError(f"layer out of range: {layer_id}")
    if not (0 <= int(extra) <= 0xFFFF):
        raise ValueError(f"detector specific bits out of range: {extra}")
    return (int(detector) << _TRKR_SHIFT) | (int(layer_id) << _LAYER_SHIFT) | int(extra)


def make_cluster_key(hitsetkey: int, index: int) -> int:
    """Pack a 64-bit cluster key from a hitset key and a cluster index."""
    if not (0 <= int(index) <= _WORD):
        raise ValueError(f"cluster index out of range: {index}")
    return (int(hitsetkey) << _CLUSTER_SHIFT) | int(index)


def hitset_key(cluster_key: int) -> int:
    """Hitset key (upper 32 bits) of a cluster key."""
    return (int(cluster_key) >> _CLUSTER_SHIFT) & _WORD


def cluster_index(cluster_key: int) -> int:
    return int(cluster_key) & _WORD


def trkr_id(cluster_key: int) -> int:
    """Subsystem id of a cluster key, as a plain ``int`` (may be unknown)."""
    return (hitset_key(cluster_key) >> _TRKR_SHIFT) & _BYTE


def layer(cluster_key: int) -> int:
    """Tracking layer of a cluster key."""
    return (hitset_key(cluster_key) >> _LAYER_SHIFT) & _BYTE
