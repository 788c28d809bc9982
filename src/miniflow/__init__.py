from .model import Flow, LogMode, Step, StepRun, StepState
from .dag import FlowConfigError, build_flow
from .propagate import clean_flow, clean_step
from .runner import FlowContext, Scheduler, run_flow
from .workflow import load_workflow, open_flow

__all__ = [
    "Flow", "LogMode", "Step", "StepRun", "StepState",
    "FlowConfigError", "build_flow", "clean_flow", "clean_step",
    "FlowContext", "Scheduler", "run_flow", "load_workflow", "open_flow",
]
