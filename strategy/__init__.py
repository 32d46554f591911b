# PATH: strategy/__init__.py
"""Strategy package for POLYARB: evaluation, gates, risk and scheduling."""

from strategy.evaluator import OpportunityEvaluator
from strategy.gas_model import GasCostModel
from strategy.gates import apply_opportunity_gates
from strategy.risk import RiskGate
from strategy.scheduler import Scheduler, ScanResult

__all__ = [
    "OpportunityEvaluator",
    "GasCostModel",
    "apply_opportunity_gates",
    "RiskGate",
    "Scheduler",
    "ScanResult",
]
