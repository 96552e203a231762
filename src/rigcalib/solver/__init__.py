"""
Least-squares problem over manifold-valued parameter blocks, solved with SciPy.
"""

from rigcalib.solver.problem import CostFunction, ParameterBlock, Problem, ResidualBlock, SolverSummary, solve

__all__ = [
    "CostFunction",
    "ParameterBlock",
    "Problem",
    "ResidualBlock",
    "SolverSummary",
    "solve",
]
