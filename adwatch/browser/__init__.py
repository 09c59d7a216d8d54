from .input import PressOptions, PressReport, PressStrategy, press
from .page_utils import PressOutcome, is_navigation_in_flight, path_of, safe_count
from .pool import BrowserPool

__all__ = [
    "BrowserPool",
    "PressOptions",
    "PressOutcome",
    "PressReport",
    "PressStrategy",
    "is_navigation_in_flight",
    "path_of",
    "press",
    "safe_count",
]
