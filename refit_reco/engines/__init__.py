from .straight_line import StraightLineEngine, StraightLineTrajectory, charge_from_pdg

__all__ = ["StraightLineEngine", "StraightLineTrajectory", "charge_from_pdg"]
