from .actions import ACTIONS, ActionRegistry, perform_action
from .change_detector import PRESS_SETTLE_BUDGETS, ChangeResult, SettleBudgets, wait_after_press
from .engine import ConvergenceLoop, ConvergenceState
from .runner import login, run_bump

__all__ = [
    "ACTIONS",
    "ActionRegistry",
    "ChangeResult",
    "ConvergenceLoop",
    "ConvergenceState",
    "PRESS_SETTLE_BUDGETS",
    "SettleBudgets",
    "login",
    "perform_action",
    "run_bump",
    "wait_after_press",
]
