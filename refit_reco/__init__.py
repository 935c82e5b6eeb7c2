__all__ = [
    "TrkrId", "make_hitset_key", "make_cluster_key",
    "Cluster", "ClusterStore", "GeometryService",
    "FitterConfig", "load_config", "dump_config",
    "DetectorKind", "Measurement", "MeasurementSet", "build_measurements",
    "SeedState", "TrackSeed", "SeedLink", "make_seed", "candidates_from_seeds",
    "EngineError", "DetPlane", "MeasuredState", "FitOutcome",
    "FittedTrajectory", "FittingEngine", "StraightLineEngine",
    "FitDriver", "extract_states", "compute_dca", "pos_cov_xyz_to_rz",
    "interpolate_disabled_layers",
    "TrackCandidate", "TrackState", "OutputTrack", "TrackMap",
    "Event", "TrackRefitter", "make_output_track",
    "load_event", "dump_event",
]

# Keys & clusters
from .cluster_keys import TrkrId, make_hitset_key, make_cluster_key
from .clusters import Cluster, ClusterStore, GeometryService

# Configuration
from .config import FitterConfig, load_config, dump_config

# Measurements & seeds
from .measurements import DetectorKind, Measurement, MeasurementSet, build_measurements
from .seeds import SeedState, TrackSeed, SeedLink, make_seed, candidates_from_seeds

# Engine interface & reference engine
from .engine import EngineError, DetPlane, MeasuredState, FitOutcome, FittedTrajectory, FittingEngine
from .engines.straight_line import StraightLineEngine

# Refit stages
from .fit_driver import FitDriver
from .extraction import extract_states
from .dca import compute_dca, pos_cov_xyz_to_rz
from .interpolation import interpolate_disabled_layers

# Tracks & event loop
from .tracks import TrackCandidate, TrackState, OutputTrack, TrackMap
from .refitter import Event, TrackRefitter, make_output_track
from .data import load_event, dump_event
