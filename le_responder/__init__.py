"""Certificate renewal daemon with an integrated ACME challenge responder."""

__version__ = "0.1.0"
__license__ = "MIT"

from .daemon import RenewalDaemon
from .responder import ChallengeResponder

__all__ = ["RenewalDaemon", "ChallengeResponder"]
