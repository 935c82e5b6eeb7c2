#!/usr/bin/env python3
r"""
Track refit runner (headless-safe).

Loads one event (clusters, optional surfaces, silicon and TPC seeds) from
JSON, assembles track candidates from the seed links, refits every candidate
with the straight-line reference engine and reports per-track results.

For each kept track the log shows :math:`p_T`, :math:`\chi^2/\mathrm{ndf}`
and the DCA observables; ``--states-out`` writes every track state
(path length, position, momentum, :math:`r`, :math:`\phi`, cluster key) as
CSV and ``--tracks-out`` one summary row per track.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   refit-reco -e event.json --states-out states.csv
   refit-reco -e event.json -c config.json --disable-layer 30 31 --plot
   refit-reco -e event.json --fit-silicon-mms -v
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from refit_reco.config import FitterConfig, load_config
from refit_reco.data import load_event
from refit_reco.engines.straight_line import StraightLineEngine
from refit_reco.profiling import prof
from refit_reco.refitter import TrackRefitter
from refit_reco.tracks import TrackMap


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface of the refit runner.

    Returns
    -------
    argparse.ArgumentParser

    Notes
    -----
    Key options:

    - ``--event``: input event JSON (see :func:`refit_reco.data.event_from_dict`).
    - ``--config``: fitter configuration JSON (see :func:`refit_reco.config.load_config`).
    - ``--disable-layer``: layers excluded from the fit, their states are interpolated.
    - ``--fit-silicon-mms``: fit with silicon and micromegas clusters only.
    - ``--plot``/``--plot-dir``: headless-safe plotting control.
    """
    p = argparse.ArgumentParser(description="Refit track candidates of one event.")
    p.add_argument("-e", "--event", type=str, required=True,
                   help="Input event JSON file.")
    p.add_argument("-c", "--config", type=str, default=None,
                   help="Path to JSON fitter configuration (default: built-in defaults).")
    p.add_argument("--disable-layer", type=int, nargs="+", action="extend", default=[],
                   metavar="LAYER",
                   help="Exclude these layers from the fit (repeatable).")
    p.add_argument("--fit-silicon-mms", action="store_true", default=False,
                   help="Fit with silicon and micromegas clusters only (disables TPC layers).")
    p.add_argument("--no-micromegas", dest="use_micromegas", action="store_false", default=None,
                   help="In silicon+micromegas mode, do not require a micromegas cluster.")
    p.add_argument("--min-pt", type=float, default=None,
                   help="Override the minimum seed pT in GeV/c.")
    p.add_argument("--iterations", type=int, default=2,
                   help="Forward/backward iterations of the reference engine (default: 2).")
    p.add_argument("--states-out", type=str, default=None,
                   help="If set, write all track states as CSV to this path.")
    p.add_argument("--tracks-out", type=str, default=None,
                   help="If set, write one summary row per track as CSV to this path.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show r-z and x-y plots of the refitted tracks (default: False).")
    p.add_argument("--plot-dir", type=str, default=None,
                   help="If set, save the plots into this directory.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the refit.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S``
    timestamps, ``DEBUG`` when ``verbose`` else ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a **headless-safe** Matplotlib configuration when plots are not shown.

    Must be called **before** importing :mod:`refit_reco.plotting`.

    Parameters
    ----------
    enable_plots : bool
        If ``False``, set backend to ``'Agg'``, turn off interactive mode and
        neutralize ``plt.show()``.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt  # noqa: WPS433
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def resolve_config(args: argparse.Namespace) -> FitterConfig:
    """Configuration file (or defaults) with the command-line overrides applied."""
    if args.config:
        logging.info("Reading config from %s", args.config)
        config = load_config(Path(args.config))
    else:
        config = FitterConfig()
    if args.disable_layer:
        config = config.with_disabled_layers(set(config.disabled_layers) | set(args.disable_layer))
    if args.fit_silicon_mms:
        config = config.with_fit_silicon_mms(True)
    overrides = {}
    if args.use_micromegas is not None:
        overrides["use_micromegas"] = args.use_micromegas
    if args.min_pt is not None:
        overrides["fit_min_pt"] = args.min_pt
    if overrides:
        config = replace(config, **overrides)
    return config


def log_tracks(track_map: TrackMap) -> None:
    """One INFO line per refitted track."""
    for t in sorted(track_map.output_tracks(), key=lambda t: t.id):
        logging.info(
            "Track %d: crossing=%d q=%+.0f pt=%.4f chi2/ndf=%.3f/%.0f dca2d=%.4g+-%.2g dca=%.4g+-%.2g states=%d",
            t.id, t.crossing, t.charge, t.pt, t.chisq, t.ndf,
            t.dca2d, t.dca2d_error, t.dca, t.dca_error, len(t.states) - 1,
        )


def main(argv: Optional[List[str]] = None) -> int:
    r"""
    End-to-end refit: **load → configure → refit → report**.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Enforce the headless plotting guard (:func:`apply_plotting_guard`).
    3. Load the event (:func:`refit_reco.data.load_event`) and the configuration
       (:func:`resolve_config`).
    4. Refit with :class:`refit_reco.refitter.TrackRefitter` over the
       straight-line reference engine, optionally under :func:`refit_reco.profiling.prof`.
    5. Log per-track results, write CSV outputs and plots when requested.

    Returns
    -------
    int
        Process exit status (``0`` on success).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    event_path = Path(args.event)
    logging.info("Loading event %s", event_path)
    event = load_event(event_path)
    config = resolve_config(args)
    if config.disabled_layers:
        logging.info("Disabled layers: %s", sorted(config.disabled_layers))

    refitter = TrackRefitter(StraightLineEngine(n_iterations=args.iterations), config)
    with prof(args.profile, out_path=args.profile_out):
        track_map = refitter.process_event(event)

    log_tracks(track_map)
    if not len(track_map):
        logging.warning("No track survived the refit for event %s.", event_path.name)

    if args.states_out:
        track_map.states_frame().to_csv(args.states_out, index=False)
        logging.info("Wrote track states to %s", args.states_out)
    if args.tracks_out:
        track_map.tracks_frame().to_csv(args.tracks_out, index=False)
        logging.info("Wrote track summary to %s", args.tracks_out)

    if args.plot or args.plot_dir:
        import refit_reco.plotting as rr_plot  # noqa: WPS433
        out_dir = Path(args.plot_dir) if args.plot_dir else None
        if out_dir is not None:
            out_dir.mkdir(parents=True, exist_ok=True)
        rr_plot.plot_event(track_map, event.clusters, show=args.plot, out_dir=out_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
