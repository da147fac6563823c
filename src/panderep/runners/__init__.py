"""External tool runner adapters."""

from panderep.runners.ggcat import GgcatRunner
from panderep.runners.mash import MashRunner
from panderep.runners.skani import SkaniRunner

__all__ = [
    "GgcatRunner",
    "MashRunner",
    "SkaniRunner",
]
