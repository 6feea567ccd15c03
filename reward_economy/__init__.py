"""reward-economy: server-authoritative task reward and referral economy."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("reward-economy")
except PackageNotFoundError:
    __version__ = "0.0.0"
