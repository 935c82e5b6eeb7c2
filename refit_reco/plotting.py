import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from refit_reco.clusters import ClusterStore
from refit_reco.tracks import OutputTrack, TrackMap

__all__ = ["plot_track_states_rz", "plot_track_states_xy", "plot_event"]

logger = logging.getLogger(__name__)

Tracks = Union[TrackMap, Iterable[OutputTrack]]


def _show_and_close(fig, *, do_show: bool = True, save_path: Optional[Path] = None) -> None:
    r"""
    Optionally save and show a Matplotlib figure, then always close it.

    Safe in headless mode where ``plt.show()`` is patched to a no-op (see
    :func:`refit_reco.main.apply_plotting_guard`).

    Parameters
    ----------
    fig : matplotlib.figure.Figure
        Figure object to display and close.
    do_show : bool, optional
        If ``True`` (default) call ``plt.show()`` before closing.
    save_path : path-like, optional
        If set, the figure is written there first.
    """
    try:
        fig.tight_layout()
    except (ValueError, RuntimeError) as e:
        logger.debug("tight_layout failed: %s", e)
    if save_path is not None:
        fig.savefig(save_path)
        logger.info("Saved figure to %s", save_path)
    if do_show:
        plt.show()
    plt.close(fig)


def _states(tracks: Tracks) -> pd.DataFrame:
    if isinstance(tracks, TrackMap):
        return tracks.states_frame()
    frames = [t.states_frame() for t in tracks]
    if not frames:
        return pd.DataFrame(columns=["track_id", "path_length", "x", "y", "z", "r", "phi", "cluster_key"])
    return pd.concat(frames, ignore_index=True)


def _fitted_only(df: pd.DataFrame) -> pd.DataFrame:
    # the path-length-zero placeholder carries no cluster
    return df[df["cluster_key"].notna()]


def plot_track_states_rz(
    tracks: Tracks,
    clusters: Optional[ClusterStore] = None,
    *,
    show: bool = True,
    save_path: Optional[Path] = None,
    max_tracks: Optional[int] = None,
) -> None:
    r"""
    Refitted track states in the :math:`(z, r)` view.

    Each track is drawn as a polyline through its states in path-length
    order, with :math:`r=\sqrt{x^2+y^2}`. When ``clusters`` is given, the
    raw cluster positions are scattered underneath for reference.

    Parameters
    ----------
    tracks : TrackMap or iterable of OutputTrack
    clusters : ClusterStore, optional
    show : bool, optional
        Call ``plt.show()`` (default ``True``).
    save_path : path-like, optional
        Write the figure to this file.
    max_tracks : int, optional
        Cap on the number of tracks drawn.
    """
    df = _fitted_only(_states(tracks))
    if df.empty:
        logger.info("No track states to plot.")
        return

    fig, ax = plt.subplots(figsize=(8, 5))
    if clusters is not None and len(clusters):
        cf = clusters.to_frame()
        ax.scatter(cf["z"], cf["r"], s=4, c="lightgray", label="clusters")
    for i, (tid, g) in enumerate(df.groupby("track_id", sort=True)):
        if max_tracks is not None and i >= max_tracks:
            break
        g = g.sort_values("path_length", kind="stable")
        ax.plot(g["z"], g["r"], "-o", ms=2, lw=1, label=f"track {tid}")
    ax.set_xlabel("z [cm]")
    ax.set_ylabel("r [cm]")
    ax.set_title("Refitted track states (r-z)")
    if df["track_id"].nunique() <= 10:
        ax.legend(fontsize="small")
    _show_and_close(fig, do_show=show, save_path=save_path)


def plot_track_states_xy(
    tracks: Tracks,
    clusters: Optional[ClusterStore] = None,
    *,
    show: bool = True,
    save_path: Optional[Path] = None,
    max_tracks: Optional[int] = None,
) -> None:
    """Refitted track states in the transverse :math:`(x, y)` view."""
    df = _fitted_only(_states(tracks))
    if df.empty:
        logger.info("No track states to plot.")
        return

    fig, ax = plt.subplots(figsize=(6, 6))
    if clusters is not None and len(clusters):
        cf = clusters.to_frame()
        ax.scatter(cf["x"], cf["y"], s=4, c="lightgray", label="clusters")
    for i, (tid, g) in enumerate(df.groupby("track_id", sort=True)):
        if max_tracks is not None and i >= max_tracks:
            break
        g = g.sort_values("path_length", kind="stable")
        ax.plot(g["x"], g["y"], "-o", ms=2, lw=1, label=f"track {tid}")
    lim = float(np.nanmax(np.abs(df[["x", "y"]].to_numpy(dtype=np.float64)))) * 1.05
    ax.set_xlim(-lim, lim)
    ax.set_ylim(-lim, lim)
    ax.set_aspect("equal")
    ax.set_xlabel("x [cm]")
    ax.set_ylabel("y [cm]")
    ax.set_title("Refitted track states (x-y)")
    _show_and_close(fig, do_show=show, save_path=save_path)


def plot_event(tracks: Tracks, clusters: Optional[ClusterStore] = None, *, show: bool = True,
               out_dir: Optional[Path] = None) -> None:
    """Both views of one event; figures are saved under ``out_dir`` when given."""
    logger.info("Plotting refitted tracks...")
    rz = Path(out_dir) / "states_rz.png" if out_dir is not None else None
    xy = Path(out_dir) / "states_xy.png" if out_dir is not None else None
    plot_track_states_rz(tracks, clusters, show=show, save_path=rz)
    plot_track_states_xy(tracks, clusters, show=show, save_path=xy)
