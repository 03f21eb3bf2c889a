"""perlnav package root."""

from perlnav.exceptions import ConfigurationError, NeverThrown, PerlNavError
from perlnav.invariants import never

__all__ = [
    "__version__",
    "ConfigurationError",
    "NeverThrown",
    "PerlNavError",
    "never",
]

__version__ = "0.1.0"
