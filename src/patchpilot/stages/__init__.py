"""Pipeline stages in execution order."""

from .design import DesignReport, run_design
from .implement import ImplementRequest, ImplementResult, run_implement
from .plan import PlanReport, run_plan
from .regression import RegressionReport, run_regression
from .research import ResearchReport, run_research
from .scans import Finding, ScanReport

__all__ = [
    "DesignReport",
    "Finding",
    "ImplementRequest",
    "ImplementResult",
    "PlanReport",
    "RegressionReport",
    "ResearchReport",
    "ScanReport",
    "run_design",
    "run_implement",
    "run_plan",
    "run_regression",
    "run_research",
]
